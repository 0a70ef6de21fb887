"""Durable host -> status report, read at start and rewritten at the end of a run."""
from __future__ import annotations

import csv
import logging
import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from .errors import PersistError
from .models import HostRecord, HostStatus

logger = logging.getLogger("fleet.report")

REPORT_COLUMNS = ["ComputerName", "Status", "Time"]

Records = Dict[str, HostRecord]


@dataclass
class ReportSnapshot:
    is_new: bool
    records: Records = field(default_factory=dict)


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    text = (value or "").strip()
    if not text:
        return None
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        logger.debug("Unparseable report time %r", text)
        return None


def open_report(path: Path) -> ReportSnapshot:
    path = Path(path)
    if not path.exists():
        return ReportSnapshot(is_new=True)

    records: Records = {}
    with open(path, "r", newline="", encoding="utf-8-sig") as f:
        for row in csv.DictReader(f):
            host = (row.get("ComputerName") or "").strip()
            if not host:
                continue
            # later rows win, one record per host
            records.pop(host, None)
            records[host] = HostRecord(
                host=host,
                status=HostStatus.parse(row.get("Status")),
                last_attempt=_parse_time(row.get("Time")),
            )
    logger.info("Loaded report %s with %s hosts", path, len(records))
    return ReportSnapshot(is_new=False, records=records)


def seed(records: Records, hosts: Iterable[str]) -> List[str]:
    """Add inventory hosts missing from the report as pending. Returns the added hosts."""
    added = []
    for host in hosts:
        if host not in records:
            records[host] = HostRecord(host=host, status=HostStatus.PENDING)
            added.append(host)
    return added


def pending_hosts(records: Records, order: Optional[Iterable[str]] = None) -> List[str]:
    """Hosts not yet at Success, in inventory order when given, report-only hosts last."""
    pending = [host for host, rec in records.items() if rec.status != HostStatus.SUCCESS]
    if order is None:
        return pending
    remaining = set(pending)
    ordered = []
    for host in order:
        if host in remaining:
            ordered.append(host)
            remaining.discard(host)
    return ordered + [host for host in pending if host in remaining]


def update(records: Records, host: str, status: HostStatus, when: Optional[datetime]) -> HostRecord:
    rec = records.get(host)
    if rec is None:
        rec = HostRecord(host=host, status=status, last_attempt=when)
        records[host] = rec
    else:
        rec.status = status
        rec.last_attempt = when
    return rec


def _row(rec: HostRecord) -> Dict[str, str]:
    status = HostStatus.SUCCESS if rec.status == HostStatus.SUCCESS else HostStatus.FAIL
    return {
        "ComputerName": rec.host,
        "Status": status.value,
        "Time": rec.last_attempt.isoformat() if rec.last_attempt else "",
    }


def persist(path: Path, records: Records) -> None:
    """Rewrite the report through a temp file so a failed write keeps the previous one."""
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        with os.fdopen(fd, "w", newline="", encoding="utf-8") as f:
            writer = csv.DictWriter(f, fieldnames=REPORT_COLUMNS)
            writer.writeheader()
            for rec in records.values():
                writer.writerow(_row(rec))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except OSError as exc:
        raise PersistError(f"Failed to write report {path}: {exc}") from exc
    finally:
        if tmp_name is not None:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
    logger.info("Report saved to %s (%s hosts)", path, len(records))
