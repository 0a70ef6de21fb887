import socket
import subprocess
from types import SimpleNamespace

import pytest

from fleet_runner import probe
from fleet_runner.errors import FleetRunnerError, TrustRestoreError
from fleet_runner.probe import MemoryTrustedHosts, PowerShellTrustedHosts, TrustedPeerRegistry, trust_entry


class FlakyStore(MemoryTrustedHosts):
    def __init__(self, value="", fail_on_write=None):
        super().__init__(value)
        self.fail_on_write = fail_on_write

    def write(self, value):
        if self.fail_on_write is not None and len(self.writes) == self.fail_on_write:
            self.writes.append(None)
            raise FleetRunnerError("Access is denied")
        super().write(value)


def test_trust_entry():
    assert trust_entry("ws-01.corp.local", "corp.local", wildcard=True) == "*.corp.local"
    assert trust_entry("ws-01.corp.local", "corp.local", wildcard=False) == "ws-01.corp.local"
    assert trust_entry("ws-01", "", wildcard=True) == "ws-01"


def test_registration_restores_snapshot():
    store = MemoryTrustedHosts("srv-a,srv-b")
    registry = TrustedPeerRegistry(store)

    with registry.registration("ws-01"):
        assert store.value == "srv-a,srv-b,ws-01"

    assert store.value == "srv-a,srv-b"


def test_registration_restores_on_exception():
    store = MemoryTrustedHosts("srv-a")
    registry = TrustedPeerRegistry(store)

    with pytest.raises(ValueError):
        with registry.registration("ws-01"):
            raise ValueError("stage blew up")

    assert store.value == "srv-a"


def test_registration_does_not_duplicate_existing_entry():
    store = MemoryTrustedHosts("ws-01")
    registry = TrustedPeerRegistry(store)

    with registry.registration("ws-01"):
        assert store.value == "ws-01"

    assert store.value == "ws-01"


def test_overlapping_registrations_restore_original():
    store = MemoryTrustedHosts("srv-a")
    registry = TrustedPeerRegistry(store)

    first = registry.registration("ws-01")
    second = registry.registration("ws-02")
    first.__enter__()
    second.__enter__()
    assert store.value == "srv-a,ws-01,ws-02"

    first.__exit__(None, None, None)
    assert store.value == "srv-a,ws-02"

    second.__exit__(None, None, None)
    assert store.value == "srv-a"


def test_failed_registration_is_raised_and_leaves_no_state():
    store = FlakyStore("srv-a", fail_on_write=0)
    registry = TrustedPeerRegistry(store)

    with pytest.raises(FleetRunnerError):
        with registry.registration("ws-01"):
            pytest.fail("body must not run")

    assert store.value == "srv-a"
    assert registry._active == []


def test_failed_restore_raises_trust_restore_error():
    store = FlakyStore("srv-a", fail_on_write=1)
    registry = TrustedPeerRegistry(store)

    with pytest.raises(TrustRestoreError):
        with registry.registration("ws-01"):
            pass


def test_check_reachable(monkeypatch):
    class Conn:
        def __enter__(self):
            return self

        def __exit__(self, *args):
            return False

    monkeypatch.setattr(probe.socket, "create_connection", lambda addr, timeout: Conn())
    assert probe.check_reachable("ws-01", 5985, 1) is None

    def refuse(addr, timeout):
        raise socket.timeout("timed out")

    monkeypatch.setattr(probe.socket, "create_connection", refuse)
    assert probe.check_reachable("ws-01", 5985, 1) == "timed out"


def test_powershell_store_reads_and_writes(monkeypatch):
    calls = []

    def fake_run(args, capture_output, text, timeout, check):
        calls.append(args[-1])
        return SimpleNamespace(returncode=0, stdout="srv-a,srv-b\r\n", stderr="")

    monkeypatch.setattr(probe.subprocess, "run", fake_run)
    store = PowerShellTrustedHosts()

    assert store.read() == "srv-a,srv-b"
    store.write("srv-a,o'brien")

    assert "Get-Item" in calls[0]
    assert "-Value 'srv-a,o''brien'" in calls[1]


def test_powershell_store_failure(monkeypatch):
    def fake_run(args, capture_output, text, timeout, check):
        raise subprocess.TimeoutExpired(args, timeout)

    monkeypatch.setattr(probe.subprocess, "run", fake_run)

    with pytest.raises(FleetRunnerError):
        PowerShellTrustedHosts().read()
