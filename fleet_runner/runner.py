import concurrent.futures
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from . import error_log, report_store
from .config import Config
from .errors import PersistError
from .executor import SessionExecutor
from .inventory import load_commands, load_hosts, resolve_artifacts
from .models import ErrorRecord, HostAttempt, HostStatus, Stage
from .probe import MemoryTrustedHosts, PowerShellTrustedHosts, TrustedHostsStore, TrustedPeerRegistry
from .winrm_client import RemoteTransport, WinRMTransport

logger = logging.getLogger("fleet.runner")


@dataclass
class RunSummary:
    noop: bool = False
    dry_run: bool = False
    attempted: List[str] = field(default_factory=list)
    statuses: Dict[str, HostStatus] = field(default_factory=dict)
    failed_stages: Dict[str, Optional[Stage]] = field(default_factory=dict)
    details: Dict[str, str] = field(default_factory=dict)
    records_logged: int = 0
    persist_errors: List[str] = field(default_factory=list)
    duration_sec: float = 0.0

    @property
    def succeeded(self) -> List[str]:
        return [h for h in self.attempted if self.statuses.get(h) == HostStatus.SUCCESS]

    @property
    def failed(self) -> List[str]:
        return [h for h in self.attempted if self.statuses.get(h) != HostStatus.SUCCESS]

    @property
    def all_succeeded(self) -> bool:
        return not self.failed and not self.persist_errors


class Runner:
    def __init__(
        self,
        config: Config,
        transport: Optional[RemoteTransport] = None,
        trusted_store: Optional[TrustedHostsStore] = None,
        probe=None,
    ):
        self.config = config
        self.transport = transport or WinRMTransport(config)
        if trusted_store is None:
            trusted_store = PowerShellTrustedHosts() if config.manage_trusted_hosts else MemoryTrustedHosts()
        self.registry = TrustedPeerRegistry(trusted_store)
        self.probe = probe
        self.summary = RunSummary()

    def execute(self) -> RunSummary:
        start = time.time()
        cfg = self.config

        snapshot = report_store.open_report(cfg.report_path)
        if not snapshot.is_new and not report_store.pending_hosts(snapshot.records):
            logger.info("All %s hosts in %s already succeeded, nothing to do.", len(snapshot.records), cfg.report_path)
            self.summary.noop = True
            return self.summary

        # Missing sources abort here, before anything is written.
        hosts = load_hosts(cfg.hosts_file)
        commands = load_commands(cfg.commands_file)
        artifacts = resolve_artifacts(cfg.files, cfg.local_dir, cfg.remote_dir) if cfg.files else []

        records = snapshot.records
        added = report_store.seed(records, hosts)
        if snapshot.is_new:
            logger.info("No report at %s, starting with %s hosts from %s", cfg.report_path, len(added), cfg.hosts_file)
        elif added:
            logger.info("Added %s new hosts from %s: %s", len(added), cfg.hosts_file, ", ".join(added))

        pending = report_store.pending_hosts(records, order=hosts)
        logger.info("%s of %s hosts pending, %s commands, %s files to stage", len(pending), len(records), len(commands), len(artifacts))

        if cfg.dry_run:
            self.summary.dry_run = True
            self._print_plan(pending, commands, artifacts)
            return self.summary

        kwargs = {"probe": self.probe} if self.probe else {}
        executor = SessionExecutor(cfg, self.transport, self.registry, commands, artifacts, **kwargs)

        run_records: List[ErrorRecord] = []
        for attempt in self._attempt_all(executor, pending):
            self._fold(records, attempt)
            run_records.extend(attempt.records)

        self._persist(records, run_records)
        self.summary.duration_sec = round(time.time() - start, 2)
        self.print_summary()
        return self.summary

    def _attempt_all(self, executor: SessionExecutor, pending: List[str]):
        """Yield attempts in inventory order; parallel attempts are folded by this thread only."""
        if self.config.max_concurrency <= 1 or len(pending) <= 1:
            for index, host in enumerate(pending, 1):
                logger.info("=== [%s/%s] %s ===", index, len(pending), host)
                yield executor.attempt(host)
            return

        with concurrent.futures.ThreadPoolExecutor(max_workers=self.config.max_concurrency) as pool:
            futures = [(host, pool.submit(executor.attempt, host)) for host in pending]
            for host, future in futures:
                try:
                    yield future.result()
                except Exception as exc:
                    logger.error("[%s] attempt raised: %s", host, exc)
                    failed = HostAttempt(host=host)
                    failed.records.append(ErrorRecord.failure(host, "attempt", str(exc)))
                    yield failed

    def _fold(self, records: report_store.Records, attempt: HostAttempt) -> None:
        status = attempt.status
        report_store.update(records, attempt.host, status, attempt.finished_at or attempt.started_at)
        self.summary.attempted.append(attempt.host)
        self.summary.statuses[attempt.host] = status
        self.summary.failed_stages[attempt.host] = attempt.failed_stage
        self.summary.details[attempt.host] = attempt.summary_detail
        if status == HostStatus.SUCCESS:
            logger.info("[%s] Success", attempt.host)
        else:
            logger.warning("[%s] Fail: %s", attempt.host, attempt.summary_detail)

    def _persist(self, records: report_store.Records, run_records: List[ErrorRecord]) -> None:
        # Each write is independent; a failure is surfaced but does not stop the other.
        if run_records:
            try:
                self.summary.records_logged = error_log.append_records(
                    self.config.error_log_path, run_records, self.config.max_error_length
                )
            except PersistError as exc:
                logger.error("Error log not written, check %s: %s", self.config.error_log_path, exc)
                self.summary.persist_errors.append(str(exc))
        try:
            report_store.persist(self.config.report_path, records)
        except PersistError as exc:
            logger.error("Report not written, check %s: %s", self.config.report_path, exc)
            self.summary.persist_errors.append(str(exc))

    def _print_plan(self, pending, commands, artifacts):
        print("\n=== Dry Run ===")
        print(f"Pending hosts ({len(pending)}):")
        for host in pending:
            print(f"  {host} -> {self.config.address_for(host)}")
        print(f"Commands ({len(commands)}):")
        for cmd in commands:
            print(f"  {cmd.position + 1:>3}. {cmd.text}")
        if artifacts:
            print(f"Files ({len(artifacts)}):")
            for artifact in artifacts:
                print(f"  {artifact.source_path} -> {artifact.destination_path}")
        print("=" * 70 + "\n")

    def print_summary(self):
        s = self.summary
        print("\n=== Run Summary ===")
        print(f"{'Host':<25} | {'Status':<8} | {'Failed stage':<15} | Detail")
        print("-" * 90)
        for host in s.attempted:
            stage = s.failed_stages.get(host)
            print(f"{host:<25} | {s.statuses[host].value:<8} | {(stage.value if stage else ''):<15} | {s.details.get(host, '')[:80]}")
        print("-" * 90)
        print(f"Attempted: {len(s.attempted)}  Success: {len(s.succeeded)}  Fail: {len(s.failed)}  Duration: {s.duration_sec}s")
        if s.persist_errors:
            print("WARNING: report/log could not be saved, verify the files manually:")
            for err in s.persist_errors:
                print(f"  {err}")
        print("=" * 90 + "\n")
