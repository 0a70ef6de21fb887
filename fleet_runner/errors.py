"""Exception taxonomy for the fleet runner."""
from __future__ import annotations


class FleetRunnerError(RuntimeError):
    pass


class SourceMissingError(FleetRunnerError):
    """Host list, command list or a staged file is absent or unreadable."""


class ServiceStartError(FleetRunnerError):
    pass


class SessionOpenError(FleetRunnerError):
    pass


class UploadError(FleetRunnerError):
    pass


class CleanupError(FleetRunnerError):
    pass


class PersistError(FleetRunnerError):
    """Writing the report or the error log failed."""


class TrustRestoreError(FleetRunnerError):
    """The trusted-hosts list could not be put back to its snapshot."""


def trim_error(value: Exception | str, max_len: int = 500) -> str:
    msg = str(value).replace("\r", " ").replace("\n", " ").strip()
    if not msg:
        if isinstance(value, Exception):
            return value.__class__.__name__
        return "unknown error"
    if len(msg) > max_len:
        return f"{msg[:max_len]}..."
    return msg
