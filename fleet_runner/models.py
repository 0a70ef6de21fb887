from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

# Written into the Error column for commands that completed; host status is
# computed from ErrorRecord.succeeded, never from this text.
SUCCESS_MARKER = "Success"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HostStatus(str, Enum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAIL = "Fail"

    @classmethod
    def parse(cls, value: Optional[str]) -> "HostStatus":
        text = (value or "").strip().lower()
        if text == "success":
            return cls.SUCCESS
        if text == "pending":
            return cls.PENDING
        return cls.FAIL


class Stage(str, Enum):
    CONNECTIVITY = "connectivity"
    TRUSTED_HOSTS = "trusted-hosts"
    SERVICE_START = "service-start"
    SESSION_OPEN = "session"
    UPLOAD = "upload"
    COMMAND_BATCH = "command-batch"
    CLEANUP = "cleanup"
    SESSION_CLOSE = "session-close"
    DONE = "done"


class HostRecord(BaseModel):
    model_config = ConfigDict(validate_assignment=True)

    host: str = Field(frozen=True, min_length=1)
    status: HostStatus = HostStatus.PENDING
    last_attempt: Optional[datetime] = None


class ErrorRecord(BaseModel):
    host: str
    command: str
    error: str
    time: datetime = Field(default_factory=utcnow)
    succeeded: bool = False

    @classmethod
    def success(cls, host: str, command: str) -> "ErrorRecord":
        return cls(host=host, command=command, error=SUCCESS_MARKER, succeeded=True)

    @classmethod
    def failure(cls, host: str, command: str, error: str) -> "ErrorRecord":
        return cls(host=host, command=command, error=error or "unknown error", succeeded=False)


@dataclass(frozen=True)
class CommandSpec:
    position: int
    text: str


@dataclass(frozen=True)
class FileArtifact:
    name: str
    source_path: Path
    destination_path: str


@dataclass
class HostAttempt:
    """Outcome of one pass through the stages for a single host."""

    host: str
    records: List[ErrorRecord] = field(default_factory=list)
    failed_stage: Optional[Stage] = None
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    @property
    def status(self) -> HostStatus:
        if any(not r.succeeded for r in self.records):
            return HostStatus.FAIL
        return HostStatus.SUCCESS

    @property
    def failures(self) -> List[ErrorRecord]:
        return [r for r in self.records if not r.succeeded]

    @property
    def summary_detail(self) -> str:
        failures = self.failures
        if not failures:
            return ""
        first = failures[0]
        extra = f" (+{len(failures) - 1} more)" if len(failures) > 1 else ""
        return f"{first.command}: {first.error}{extra}"
