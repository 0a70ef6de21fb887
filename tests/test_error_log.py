from fleet_runner import error_log
from fleet_runner.models import ErrorRecord


def test_creates_log_with_header(tmp_path):
    path = tmp_path / "errors.csv"

    written = error_log.append_records(path, [ErrorRecord.success("A", "cmd1")])

    assert written == 1
    lines = path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == "ComputerName,Command,Error,Time"
    assert lines[1].startswith("A,cmd1,Success,")


def test_appends_without_rewriting(tmp_path):
    path = tmp_path / "errors.csv"
    error_log.append_records(path, [ErrorRecord.failure("A", "cmd1", "boom")])
    first = path.read_text(encoding="utf-8")

    error_log.append_records(path, [ErrorRecord.success("A", "cmd1"), ErrorRecord.failure("B", "unreachable", "timed out")])

    content = path.read_text(encoding="utf-8")
    assert content.startswith(first)
    assert content.count("ComputerName,Command,Error,Time") == 1
    rows = error_log.read_records(path)
    assert [(r["ComputerName"], r["Command"], r["Error"]) for r in rows] == [
        ("A", "cmd1", "boom"),
        ("A", "cmd1", "Success"),
        ("B", "unreachable", "timed out"),
    ]


def test_details_are_flattened_and_truncated(tmp_path):
    path = tmp_path / "errors.csv"
    detail = "line one\r\nline two " + "x" * 50

    error_log.append_records(path, [ErrorRecord.failure("A", "cmd", detail)], max_len=20)

    row = error_log.read_records(path)[0]
    assert row["Error"] == "line one  line two x"


def test_failure_text_equal_to_marker_stays_a_failure():
    record = ErrorRecord.failure("A", "cmd", "Success")

    assert record.succeeded is False


def test_read_missing_log(tmp_path):
    assert error_log.read_records(tmp_path / "none.csv") == []
