from __future__ import annotations

from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import pytest

from fleet_runner.config import load_config
from fleet_runner.errors import CleanupError, ServiceStartError, SessionOpenError, UploadError
from fleet_runner.winrm_client import CommandResult, RemoteSession, RemoteTransport


class FakeSession(RemoteSession):
    def __init__(self, transport: "FakeTransport", address: str):
        self.transport = transport
        self.address = address
        self.closed = False

    def run(self, command: str) -> CommandResult:
        self.transport.calls.append(("run", self.address, command))
        key = (self.address, command)
        if key in self.transport.command_raises:
            raise self.transport.command_raises[key]
        if key in self.transport.command_failures:
            return CommandResult(exit_code=1, stdout="", stderr=self.transport.command_failures[key])
        return CommandResult(exit_code=0, stdout="ok", stderr="")

    def upload(self, artifact) -> None:
        self.transport.calls.append(("upload", self.address, artifact.name))
        if (self.address, artifact.name) in self.transport.upload_failures:
            raise UploadError("access denied")

    def remove(self, artifact) -> None:
        self.transport.calls.append(("remove", self.address, artifact.name))
        if (self.address, artifact.name) in self.transport.remove_failures:
            raise CleanupError("file in use")

    def close(self) -> None:
        self.transport.calls.append(("close", self.address, None))
        self.closed = True
        if self.address in self.transport.close_failures:
            raise OSError("connection reset")


class FakeTransport(RemoteTransport):
    def __init__(self):
        self.calls: List[Tuple[str, str, Optional[str]]] = []
        self.service_failures: Set[str] = set()
        self.session_failures: Set[str] = set()
        self.command_failures: Dict[Tuple[str, str], str] = {}
        self.command_raises: Dict[Tuple[str, str], Exception] = {}
        self.upload_failures: Set[Tuple[str, str]] = set()
        self.remove_failures: Set[Tuple[str, str]] = set()
        self.close_failures: Set[str] = set()
        self.sessions: List[FakeSession] = []

    def start_service(self, address: str) -> None:
        self.calls.append(("service", address, None))
        if address in self.service_failures:
            raise ServiceStartError("access denied")

    def open_session(self, address: str) -> RemoteSession:
        self.calls.append(("open", address, None))
        if address in self.session_failures:
            raise SessionOpenError("401 unauthorized")
        session = FakeSession(self, address)
        self.sessions.append(session)
        return session

    def touched(self) -> Set[str]:
        return {address for _, address, _ in self.calls}

    def calls_for(self, address: str, kind: Optional[str] = None):
        return [c for c in self.calls if c[1] == address and (kind is None or c[0] == kind)]


class FakeProbe:
    def __init__(self, unreachable: Optional[Set[str]] = None):
        self.unreachable = unreachable or set()
        self.checked: List[str] = []

    def __call__(self, address: str, port: int, timeout: float) -> Optional[str]:
        self.checked.append(address)
        if address in self.unreachable:
            return "timed out"
        return None


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    (tmp_path / "hosts.txt").write_text("A\nB\n", encoding="utf-8")
    (tmp_path / "commands.txt").write_text("cmd1\n", encoding="utf-8")
    return tmp_path


@pytest.fixture
def make_config(workdir: Path):
    def _make(*extra: str):
        argv = [
            "--hosts-file", str(workdir / "hosts.txt"),
            "--commands-file", str(workdir / "commands.txt"),
            "--report", str(workdir / "report.csv"),
            "--error-log", str(workdir / "errors.csv"),
            "--local-dir", str(workdir),
            "--env-file", str(workdir / "missing.env"),
            "--service-start-command", "",
            *extra,
        ]
        return load_config(argv)

    return _make
