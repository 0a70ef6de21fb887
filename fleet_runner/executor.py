"""
Per-host attempt: connectivity, trusted hosts, then the session stages.

Stages run in a fixed order and each one hands back the next stage to run.
A failed stage records an ErrorRecord and jumps to the end; the command batch
and the per-file stages never stop early, every item is tried.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .errors import FleetRunnerError, TrustRestoreError, trim_error
from .models import CommandSpec, ErrorRecord, FileArtifact, HostAttempt, Stage, utcnow
from .probe import TrustedPeerRegistry, check_reachable, trust_entry
from .winrm_client import TRANSPORT_ERRORS, RemoteSession, RemoteTransport

logger = logging.getLogger("fleet.executor")

STAGE_ERRORS = (FleetRunnerError,) + TRANSPORT_ERRORS

Probe = Callable[[str, int, float], Optional[str]]


@dataclass
class _AttemptState:
    host: str
    address: str
    result: HostAttempt
    session: Optional[RemoteSession] = None
    staged: List[FileArtifact] = field(default_factory=list)
    cleaned: bool = False

    def ok(self, tag: str) -> None:
        self.result.records.append(ErrorRecord.success(self.host, tag))

    def fail(self, stage: Stage, tag: str, detail: str) -> None:
        self.result.records.append(ErrorRecord.failure(self.host, tag, detail))
        if self.result.failed_stage is None:
            self.result.failed_stage = stage
        logger.warning("[%s] %s failed: %s", self.host, tag, detail)

    def crash(self, stage: Stage, tag: str, exc: Exception) -> None:
        logger.exception("[%s] unexpected error in %s", self.host, tag)
        self.fail(stage, tag, f"unexpected error: {trim_error(exc)}")


class SessionExecutor:
    def __init__(
        self,
        config,
        transport: RemoteTransport,
        registry: TrustedPeerRegistry,
        commands: Sequence[CommandSpec],
        artifacts: Sequence[FileArtifact] = (),
        probe: Probe = check_reachable,
    ):
        self.config = config
        self.transport = transport
        self.registry = registry
        self.commands = list(commands)
        self.artifacts = list(artifacts)
        self.probe = probe
        self._handlers: Dict[Stage, Callable[[_AttemptState], Stage]] = {
            Stage.SERVICE_START: self._start_service,
            Stage.SESSION_OPEN: self._open_session,
            Stage.UPLOAD: self._upload,
            Stage.COMMAND_BATCH: self._run_commands,
            Stage.CLEANUP: self._cleanup,
            Stage.SESSION_CLOSE: self._close_session,
        }

    def attempt(self, host: str) -> HostAttempt:
        state = _AttemptState(host=host, address=self.config.address_for(host), result=HostAttempt(host=host))
        logger.info("[%s] checking connectivity to %s:%s", host, state.address, self.config.winrm_port)
        error = self.probe(state.address, self.config.winrm_port, self.config.connect_timeout)
        if error is not None:
            state.fail(Stage.CONNECTIVITY, "unreachable", error)
        else:
            self._attempt_trusted(state)
        state.result.finished_at = utcnow()
        logger.info("[%s] attempt finished: %s", host, state.result.status.value)
        return state.result

    def _attempt_trusted(self, state: _AttemptState) -> None:
        entry = trust_entry(state.address, self.config.domain_suffix, self.config.trust_wildcard)
        try:
            with self.registry.registration(entry):
                self._drive(state)
        except TrustRestoreError as exc:
            state.fail(Stage.TRUSTED_HOSTS, "trusted-hosts", f"restore failed: {exc}")
        except FleetRunnerError as exc:
            state.fail(Stage.TRUSTED_HOSTS, "trusted-hosts", trim_error(exc))

    def _drive(self, state: _AttemptState) -> None:
        stage = Stage.SERVICE_START
        try:
            while stage is not Stage.DONE:
                stage = self._handlers[stage](state)
        except Exception as exc:
            state.crash(stage, stage.value, exc)
        finally:
            # staged files and the channel are never left behind, whatever happened above
            if state.session is not None:
                if state.staged and not state.cleaned:
                    self._cleanup(state)
                self._close_session(state)

    def _start_service(self, state: _AttemptState) -> Stage:
        logger.info("[%s] starting remote service", state.host)
        try:
            self.transport.start_service(state.address)
        except STAGE_ERRORS as exc:
            state.fail(Stage.SERVICE_START, "service-start", trim_error(exc))
            return Stage.DONE
        return Stage.SESSION_OPEN

    def _open_session(self, state: _AttemptState) -> Stage:
        logger.info("[%s] opening session", state.host)
        try:
            state.session = self.transport.open_session(state.address)
        except STAGE_ERRORS as exc:
            state.fail(Stage.SESSION_OPEN, "session", trim_error(exc))
            return Stage.DONE
        return Stage.UPLOAD if self.artifacts else Stage.COMMAND_BATCH

    def _upload(self, state: _AttemptState) -> Stage:
        for artifact in self.artifacts:
            tag = f"upload:{artifact.name}"
            logger.info("[%s] uploading %s to %s", state.host, artifact.name, artifact.destination_path)
            # a partial upload can leave a file behind, so every attempt gets cleaned up
            state.staged.append(artifact)
            try:
                state.session.upload(artifact)
            except STAGE_ERRORS as exc:
                state.fail(Stage.UPLOAD, tag, trim_error(exc))
            except Exception as exc:
                state.crash(Stage.UPLOAD, tag, exc)
            else:
                state.ok(tag)
        return Stage.COMMAND_BATCH

    def _run_commands(self, state: _AttemptState) -> Stage:
        total = len(self.commands)
        for cmd in self.commands:
            logger.info("[%s] command %s/%s: %s", state.host, cmd.position + 1, total, cmd.text)
            try:
                result = state.session.run(cmd.text)
            except STAGE_ERRORS as exc:
                state.fail(Stage.COMMAND_BATCH, cmd.text, trim_error(exc))
                continue
            except Exception as exc:
                state.crash(Stage.COMMAND_BATCH, cmd.text, exc)
                continue
            if result.ok:
                state.ok(cmd.text)
            else:
                state.fail(Stage.COMMAND_BATCH, cmd.text, trim_error(result.detail))
        return Stage.CLEANUP if state.staged else Stage.SESSION_CLOSE

    def _cleanup(self, state: _AttemptState) -> Stage:
        state.cleaned = True
        for artifact in state.staged:
            tag = f"cleanup:{artifact.name}"
            logger.info("[%s] removing %s", state.host, artifact.destination_path)
            try:
                state.session.remove(artifact)
            except STAGE_ERRORS as exc:
                state.fail(Stage.CLEANUP, tag, trim_error(exc))
            except Exception as exc:
                state.crash(Stage.CLEANUP, tag, exc)
            else:
                state.ok(tag)
        return Stage.SESSION_CLOSE

    def _close_session(self, state: _AttemptState) -> Stage:
        session, state.session = state.session, None
        if session is None:
            return Stage.DONE
        logger.debug("[%s] closing session", state.host)
        try:
            session.close()
        except STAGE_ERRORS as exc:
            state.fail(Stage.SESSION_CLOSE, "session-close", trim_error(exc))
        except Exception as exc:
            state.crash(Stage.SESSION_CLOSE, "session-close", exc)
        return Stage.DONE
