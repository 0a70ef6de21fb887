import base64
import logging
import shlex
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List, Tuple

import winrm
from requests.exceptions import RequestException
from winrm.exceptions import WinRMError, WinRMOperationTimeoutError, WinRMTransportError

from .errors import CleanupError, ServiceStartError, SessionOpenError, UploadError, trim_error
from .models import FileArtifact

logger = logging.getLogger("fleet.winrm")

UPLOAD_CHUNK = 1024  # base64 chars per append, multiple of 4
SERVICE_ALREADY_RUNNING = 1056

# Raised by the transport for network/protocol level trouble, as opposed to a
# command that ran and reported failure.
TRANSPORT_ERRORS: Tuple[type, ...] = (
    RequestException,
    WinRMError,
    WinRMTransportError,
    WinRMOperationTimeoutError,
    OSError,
)


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    @property
    def detail(self) -> str:
        return (self.stderr or self.stdout or f"exit code {self.exit_code}").strip()


class RemoteSession(ABC):
    @abstractmethod
    def run(self, command: str) -> CommandResult:
        ...

    @abstractmethod
    def upload(self, artifact: FileArtifact) -> None:
        ...

    @abstractmethod
    def remove(self, artifact: FileArtifact) -> None:
        ...

    @abstractmethod
    def close(self) -> None:
        ...


class RemoteTransport(ABC):
    @abstractmethod
    def start_service(self, address: str) -> None:
        ...

    @abstractmethod
    def open_session(self, address: str) -> RemoteSession:
        ...


def compute_timeouts(read_timeout_sec: int) -> Tuple[int, int]:
    """operation_timeout_sec for WSMan, read_timeout_sec for HTTP (must be larger)."""
    op_timeout = max(5, int(read_timeout_sec))
    return op_timeout, op_timeout + 30


def decode_output(b: bytes) -> str:
    if not b:
        return ""
    try:
        return b.decode("utf-8")
    except UnicodeDecodeError:
        return b.decode("utf-16-le", errors="ignore")


def _ps_quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def service_argv(template: str, address: str) -> List[str]:
    """Split the template into arguments, then substitute the address per argument."""
    argv = []
    # posix=False keeps UNC backslashes; surrounding quotes are stripped by hand
    for token in shlex.split(template, posix=False):
        if len(token) >= 2 and token[0] == token[-1] and token[0] in "\"'":
            token = token[1:-1]
        argv.append(token.replace("{address}", address))
    return argv


class WinRMSession(RemoteSession):
    def __init__(self, address: str, session: winrm.Session):
        self.address = address
        self._session = session

    def run(self, command: str) -> CommandResult:
        r = self._session.run_ps(command)
        return CommandResult(
            exit_code=r.status_code,
            stdout=decode_output(r.std_out),
            stderr=decode_output(r.std_err),
        )

    def upload(self, artifact: FileArtifact) -> None:
        """Write the local file to the destination path via chunked base64 appends."""
        try:
            payload = artifact.source_path.read_bytes()
        except OSError as exc:
            raise UploadError(f"cannot read {artifact.source_path}: {trim_error(exc)}") from exc

        dest = _ps_quote(artifact.destination_path)
        init_cmd = rf"""
$p = {dest}
New-Item -ItemType File -Path $p -Force | Out-Null
"""
        r = self.run(init_cmd)
        if not r.ok:
            raise UploadError(f"init failed: {r.detail[:500]}")

        encoded = base64.b64encode(payload).decode("ascii")
        for i in range(0, len(encoded), UPLOAD_CHUNK):
            part = encoded[i:i + UPLOAD_CHUNK]
            append_cmd = rf"""
$p = {dest}
$bytes = [Convert]::FromBase64String("{part}")
$fs = [IO.File]::Open($p, [IO.FileMode]::Append)
try {{ $fs.Write($bytes, 0, $bytes.Length) }} finally {{ $fs.Close() }}
"""
            r = self.run(append_cmd)
            if not r.ok:
                raise UploadError(f"failed at chunk {i // UPLOAD_CHUNK}: {r.detail[:500]}")
        logger.debug("[%s] uploaded %s (%s bytes)", self.address, artifact.name, len(payload))

    def remove(self, artifact: FileArtifact) -> None:
        r = self.run(f"Remove-Item -LiteralPath {_ps_quote(artifact.destination_path)} -Force -ErrorAction Stop")
        if not r.ok:
            raise CleanupError(r.detail[:500])

    def close(self) -> None:
        self._session.protocol.transport.close_session()


class WinRMTransport(RemoteTransport):
    def __init__(self, config):
        self.config = config

    def _build_session(self, address: str) -> winrm.Session:
        op_timeout, rd_timeout = compute_timeouts(self.config.read_timeout)
        endpoint = f"{self.config.winrm_scheme}://{address}:{self.config.winrm_port}/wsman"
        return winrm.Session(
            target=endpoint,
            auth=(self.config.username, self.config.password),
            transport=self.config.winrm_transport,
            server_cert_validation='validate' if self.config.verify_ssl else 'ignore',
            operation_timeout_sec=op_timeout,
            read_timeout_sec=rd_timeout
        )

    def start_service(self, address: str) -> None:
        template = (self.config.service_start_command or "").strip()
        if not template:
            return
        argv = service_argv(template, address)
        try:
            result = subprocess.run(
                argv,
                shell=False,
                capture_output=True,
                text=True,
                timeout=self.config.read_timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise ServiceStartError(trim_error(exc)) from exc
        if result.returncode == 0:
            return
        output = f"{result.stdout}\n{result.stderr}"
        if result.returncode == SERVICE_ALREADY_RUNNING or str(SERVICE_ALREADY_RUNNING) in output:
            logger.debug("[%s] service already running", address)
            return
        raise ServiceStartError(f"exit {result.returncode}: {trim_error(output)}")

    def open_session(self, address: str) -> RemoteSession:
        session = self._build_session(address)
        try:
            r = session.run_cmd("hostname")
        except TRANSPORT_ERRORS as exc:
            raise SessionOpenError(trim_error(exc)) from exc
        if r.status_code != 0:
            raise SessionOpenError(f"session check exited {r.status_code}: {decode_output(r.std_err)[:500]}")
        logger.debug("[%s] session open (%s)", address, decode_output(r.std_out).strip())
        return WinRMSession(address, session)
