"""Reachability check and scoped registration in the local WinRM TrustedHosts list."""
from __future__ import annotations

import logging
import socket
import subprocess
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, List, Optional

from .errors import FleetRunnerError, TrustRestoreError, trim_error

logger = logging.getLogger("fleet.probe")

TRUSTED_HOSTS_ITEM = r"WSMan:\localhost\Client\TrustedHosts"


def check_reachable(address: str, port: int, timeout_sec: float) -> Optional[str]:
    """TCP connect to the WinRM listener. Returns None when reachable, else the error."""
    try:
        with socket.create_connection((address, port), timeout=timeout_sec):
            return None
    except OSError as exc:
        return trim_error(exc, 200)


def trust_entry(address: str, domain_suffix: str = "", wildcard: bool = False) -> str:
    suffix = (domain_suffix or "").strip().lstrip(".")
    if wildcard and suffix:
        return f"*.{suffix}"
    return address


def split_entries(value: Optional[str]) -> List[str]:
    return [part.strip() for part in (value or "").split(",") if part.strip()]


class TrustedHostsStore(ABC):
    @abstractmethod
    def read(self) -> str:
        ...

    @abstractmethod
    def write(self, value: str) -> None:
        ...


class MemoryTrustedHosts(TrustedHostsStore):
    """Keeps the list in process. Used when the machine-wide list is left alone."""

    def __init__(self, value: str = "") -> None:
        self.value = value
        self.writes: List[str] = []

    def read(self) -> str:
        return self.value

    def write(self, value: str) -> None:
        self.writes.append(value)
        self.value = value


class PowerShellTrustedHosts(TrustedHostsStore):
    """Reads and writes the machine-wide TrustedHosts item through local PowerShell."""

    def __init__(self, timeout: int = 30, executable: str = "powershell") -> None:
        self.timeout = timeout
        self.executable = executable

    def _run(self, script: str) -> str:
        args = [self.executable, "-NoProfile", "-NonInteractive", "-Command", script]
        try:
            result = subprocess.run(args, capture_output=True, text=True, timeout=self.timeout, check=False)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise FleetRunnerError(f"TrustedHosts call failed: {trim_error(exc)}") from exc
        if result.returncode != 0:
            raise FleetRunnerError(f"TrustedHosts call exited {result.returncode}: {result.stderr.strip()[:500]}")
        return result.stdout

    def read(self) -> str:
        return self._run(f"(Get-Item -Path '{TRUSTED_HOSTS_ITEM}').Value").strip()

    def write(self, value: str) -> None:
        escaped = value.replace("'", "''")
        self._run(f"Set-Item -Path '{TRUSTED_HOSTS_ITEM}' -Value '{escaped}' -Force")


class TrustedPeerRegistry:
    """
    Adds a host to the trusted list for the length of one attempt.

    The list is captured when the first attempt enters. Each exit writes back
    the capture plus the entries of attempts still running, so once the last
    attempt leaves the store holds exactly what it held before.
    """

    def __init__(self, store: TrustedHostsStore) -> None:
        self.store = store
        self._lock = threading.Lock()
        self._snapshot: Optional[str] = None
        self._active: List[str] = []

    def _compose(self) -> str:
        entries = split_entries(self._snapshot)
        for entry in self._active:
            if entry not in entries:
                entries.append(entry)
        return ",".join(entries)

    def _write_current(self) -> None:
        if self._active:
            self.store.write(self._compose())
        else:
            self.store.write(self._snapshot or "")
            self._snapshot = None

    @contextmanager
    def registration(self, entry: str) -> Iterator[None]:
        with self._lock:
            if not self._active:
                self._snapshot = self.store.read()
            self._active.append(entry)
            try:
                self.store.write(self._compose())
            except Exception:
                self._active.remove(entry)
                if not self._active:
                    self._snapshot = None
                raise
            logger.debug("Trusted hosts now include %s", entry)
        try:
            yield
        finally:
            with self._lock:
                self._active.remove(entry)
                try:
                    self._write_current()
                except Exception as exc:
                    logger.error("Could not restore trusted hosts after %s: %s", entry, exc)
                    raise TrustRestoreError(trim_error(exc)) from exc
