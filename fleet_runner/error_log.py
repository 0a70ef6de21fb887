"""Append-only CSV log of every attempt, failed or not."""
from __future__ import annotations

import csv
import logging
import os
from pathlib import Path
from typing import Any, Dict, Iterable, List

from .errors import PersistError
from .models import ErrorRecord, SUCCESS_MARKER

logger = logging.getLogger("fleet.errorlog")

LOG_COLUMNS = ["ComputerName", "Command", "Error", "Time"]
DEFAULT_MAX_ERROR_LEN = 1000


def _sanitize_message(message: Any, max_len: int) -> str:
    if message is None:
        return ""
    text = str(message).replace("\r", " ").replace("\n", " ").strip()
    if max_len and len(text) > max_len:
        return text[:max_len]
    return text


def _row(record: ErrorRecord, max_len: int) -> Dict[str, str]:
    return {
        "ComputerName": record.host,
        "Command": _sanitize_message(record.command, 0),
        "Error": SUCCESS_MARKER if record.succeeded else _sanitize_message(record.error, max_len),
        "Time": record.time.isoformat(),
    }


def append_records(path: Path, records: Iterable[ErrorRecord], max_len: int = DEFAULT_MAX_ERROR_LEN) -> int:
    """Create the log with a header on first use, otherwise append. Returns rows written."""
    path = Path(path)
    rows = [_row(r, max_len) for r in records]
    try:
        file_exists = path.exists() and path.stat().st_size > 0
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "a" if file_exists else "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=LOG_COLUMNS)
            if not file_exists:
                writer.writeheader()
            writer.writerows(rows)
            f.flush()
            os.fsync(f.fileno())
    except OSError as exc:
        raise PersistError(f"Failed to write error log {path}: {exc}") from exc
    logger.info("%s %s records to %s", "Appended" if file_exists else "Created log with", len(rows), path)
    return len(rows)


def read_records(path: Path) -> List[Dict[str, str]]:
    path = Path(path)
    if not path.exists():
        return []
    with open(path, "r", newline="", encoding="utf-8-sig") as f:
        return [dict(row) for row in csv.DictReader(f)]
