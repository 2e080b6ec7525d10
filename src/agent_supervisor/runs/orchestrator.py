"""Execution Orchestrator: start, supervise, cancel, resume, and reconcile runs."""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from agent_supervisor.config import RunnerSettings
from agent_supervisor.runs.command import AGENT_BINARY_SETTING, build_run_args, command_preview
from agent_supervisor.runs.confinement import (
    ConfinementBuilder,
    build_confinement,
    confine_or_fallback,
)
from agent_supervisor.runs.errors import (
    DefinitionNotFound,
    IllegalTransition,
    ProcessNotFound,
    ProcessSpawnError,
    RegistryConflict,
    WatchdogTimeout,
)
from agent_supervisor.runs.lifecycle import FinalizeResult, RunLifecycleController
from agent_supervisor.runs.models import (
    AgentDefinition,
    AgentRunCreate,
    AgentRunView,
    RunHandle,
    RunStatus,
)
from agent_supervisor.runs.notifications import RUN_COMPLETE, NotificationHub, NotificationSink
from agent_supervisor.runs.process import (
    kill_pid,
    pid_is_running,
    spawn_process,
    terminate_process,
)
from agent_supervisor.runs.registry import ProcessRegistry
from agent_supervisor.runs.repository import RunRepository
from agent_supervisor.runs.stream import OutputStreamProcessor, StreamOutcome
from agent_supervisor.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_TASK = "Default task"
_WATCHDOG_POLL_SECONDS = 0.1


@dataclass(slots=True)
class ReconcileSummary:
    """Restart-time settlement of runs left ``running`` without a live entry."""

    paused: int = 0
    completed: int = 0
    failed: int = 0
    still_alive: int = 0


class ExecutionOrchestrator:
    """Composes registry, stream processor, and lifecycle controller into runs.

    ``start`` returns as soon as the process is registered and marked
    running. A daemon monitor thread per run then drains output, applies the
    first-output watchdog, and asks the lifecycle controller for the final
    status. Post-spawn failures surface only through persisted status and
    ``run-complete`` notifications.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: RunRepository,
        settings: RunnerSettings,
        registry: ProcessRegistry | None = None,
        notifications: NotificationSink | None = None,
        confinement: ConfinementBuilder | None = None,
        lifecycle: RunLifecycleController | None = None,
    ) -> None:
        self.repository = repository
        self.settings = settings
        self.registry = registry or ProcessRegistry()
        self.notifications = notifications or NotificationHub()
        self.confinement = confinement or build_confinement(settings.confinement_prefix)
        self.lifecycle = lifecycle or RunLifecycleController(repository)
        self._monitors_lock = threading.Lock()
        self._monitors: dict[str, threading.Thread] = {}

    def start(
        self,
        agent_id: str,
        task: str | None = None,
        project_path: str | Path | None = None,
        *,
        model: str | None = None,
        auto_resume: bool | None = None,
    ) -> RunHandle:
        """Create a pending run for the agent and launch it now."""

        definition = self._definition(agent_id)
        run = self.repository.create_run(
            self._run_payload(
                definition,
                task=task,
                project_path=project_path,
                model=model,
                auto_resume=auto_resume,
                status=RunStatus.PENDING,
            ),
        )
        logger.info("Run %s created for agent %s", run.run_id, definition.name)
        return self._launch(run, definition=definition)

    def schedule(  # noqa: PLR0913
        self,
        agent_id: str,
        task: str | None = None,
        project_path: str | Path | None = None,
        *,
        start_at: datetime,
        model: str | None = None,
        auto_resume: bool | None = None,
    ) -> AgentRunView:
        """Create a scheduled run for the scheduler loop to pick up."""

        definition = self._definition(agent_id)
        run = self.repository.create_run(
            self._run_payload(
                definition,
                task=task,
                project_path=project_path,
                model=model,
                auto_resume=auto_resume,
                status=RunStatus.SCHEDULED,
                scheduled_start_time=start_at,
            ),
        )
        logger.info("Run %s scheduled for %s", run.run_id, start_at.isoformat())
        return run

    def launch_claimed(self, run_id: str) -> RunHandle:
        """Launch a run already moved to ``pending`` by a claim."""

        run = self.repository.get_run(run_id)
        if run.status != RunStatus.PENDING:
            raise IllegalTransition(run_id, run.status, RunStatus.RUNNING)
        definition = self.repository.find_agent_by_id(run.agent_id)
        if definition is None:
            self.lifecycle.fail(run.run_id, expected=RunStatus.PENDING, reason="definition missing")
            raise DefinitionNotFound(run.agent_id)
        return self._launch(run, definition=definition)

    def cancel(self, run_id: str) -> RunStatus:
        """Cancel a scheduled or running run. Cancelling a terminal run is a no-op."""

        result = self.lifecycle.cancel(run_id)
        if not result.was_running:
            return result.status
        session_key = self.registry.key_for_run(run_id)
        if session_key is not None:
            try:
                self.registry.kill(session_key, grace_seconds=self.settings.kill_grace_seconds)
            except ProcessNotFound:
                logger.debug("Run %s exited before kill", run_id)
            return result.status
        run = self.repository.get_run(run_id)
        if run.pid is not None and pid_is_running(run.pid):
            logger.info("Run %s has no registry entry; killing pid %s directly", run_id, run.pid)
            kill_pid(run.pid, grace_seconds=self.settings.kill_grace_seconds)
        return result.status

    def resume(self, run_id: str) -> RunHandle:
        """Resume a usage-limit paused run now instead of waiting for its schedule."""

        parent = self.repository.get_run(run_id)
        if parent.status != RunStatus.PAUSED_USAGE_LIMIT:
            raise IllegalTransition(run_id, parent.status, RunStatus.PENDING)
        for child in self.repository.list_children(parent.run_id):
            if child.status == RunStatus.SCHEDULED and self.lifecycle.claim(child.run_id):
                logger.info("Resuming run %s via continuation %s", run_id, child.run_id)
                return self.launch_claimed(child.run_id)
        continuation = self.lifecycle.create_continuation(
            parent,
            status=RunStatus.PENDING,
            auto_resume=parent.auto_resume_enabled,
        )
        if continuation is None:
            raise IllegalTransition(run_id, parent.status, RunStatus.PENDING)
        return self.launch_claimed(continuation.run_id)

    def reconcile(self) -> ReconcileSummary:
        """Settle ``running`` rows that have no live registry entry (e.g. after restart)."""

        summary = ReconcileSummary()
        for run in self.repository.list_running():
            if self.registry.key_for_run(run.run_id) is not None:
                continue
            if pid_is_running(run.pid):
                summary.still_alive += 1
                logger.warning(
                    "Run %s is running as pid %s without supervision; leaving it running",
                    run.run_id,
                    run.pid,
                )
                continue
            result = self.lifecycle.reconcile_orphan(
                run,
                transcript=self.repository.get_output(run.run_id),
                assumed_utc_offset_hours=self.settings.assumed_utc_offset_hours,
            )
            if result.status == RunStatus.PAUSED_USAGE_LIMIT:
                summary.paused += 1
            elif result.status == RunStatus.COMPLETED:
                summary.completed += 1
            else:
                summary.failed += 1
        return summary

    def wait(self, run_id: str, timeout: float | None = None) -> bool:
        """Join the run's monitor thread; ``True`` once monitoring has finished."""

        with self._monitors_lock:
            monitor = self._monitors.get(run_id)
        if monitor is None:
            return True
        monitor.join(timeout)
        return not monitor.is_alive()

    def live_output(self, run_id: str) -> list[str]:
        session_key = self.registry.key_for_run(run_id)
        if session_key is None:
            raise ProcessNotFound(run_id)
        return self.registry.read_output(session_key)

    def _definition(self, agent_id: str) -> AgentDefinition:
        definition = self.repository.find_agent_by_id(agent_id)
        if definition is None:
            raise DefinitionNotFound(agent_id)
        return definition

    def _run_payload(  # noqa: PLR0913
        self,
        definition: AgentDefinition,
        *,
        task: str | None,
        project_path: str | Path | None,
        model: str | None,
        auto_resume: bool | None,
        status: RunStatus,
        scheduled_start_time: datetime | None = None,
    ) -> AgentRunCreate:
        resolved_path = (
            Path(project_path)
            if project_path
            else self.settings.default_project_path or Path.cwd()
        )
        return AgentRunCreate(
            agent_id=definition.agent_id,
            agent_name=definition.name,
            agent_icon=definition.icon,
            task=(task or "").strip() or definition.default_task or DEFAULT_TASK,
            model=(model or "").strip() or definition.model or self.settings.default_model,
            project_path=str(resolved_path.expanduser().resolve()),
            status=status,
            scheduled_start_time=scheduled_start_time,
            auto_resume_enabled=(
                self.settings.auto_resume_default if auto_resume is None else auto_resume
            ),
        )

    def _launch(self, run: AgentRunView, *, definition: AgentDefinition) -> RunHandle:
        resume_session, first_line_number = self._resume_context(run)
        try:
            argv = self._build_command(run, definition=definition, resume_session=resume_session)
            process = spawn_process(
                argv,
                cwd=Path(run.project_path),
                env=os.environ.copy(),
            )
        except ProcessSpawnError as error:
            error.run_id = run.run_id
            self.lifecycle.fail(run.run_id, expected=RunStatus.PENDING, reason=str(error))
            raise

        session_key = resume_session or run.run_id
        try:
            self.registry.register(session_key, process, run_id=run.run_id)
        except RegistryConflict as error:
            terminate_process(process, grace_seconds=self.settings.kill_grace_seconds)
            self.lifecycle.fail(run.run_id, expected=RunStatus.PENDING, reason=str(error))
            raise ProcessSpawnError(
                f"Session {session_key} already has a live process",
                transient=True,
                run_id=run.run_id,
            ) from error

        started_at = utc_now()
        if not self.lifecycle.mark_running(run.run_id, pid=process.pid, started_at=started_at):
            # Row left pending (cancelled or failed elsewhere); do not leave the process behind.
            self.registry.unregister(session_key)
            terminate_process(process, grace_seconds=self.settings.kill_grace_seconds)
            current = self.repository.get_run(run.run_id)
            raise IllegalTransition(run.run_id, current.status, RunStatus.RUNNING)

        logger.info(
            "Run %s started pid=%s session_key=%s command=%s",
            run.run_id,
            process.pid,
            session_key,
            command_preview(argv),
        )
        running = self.repository.get_run(run.run_id)
        monitor = threading.Thread(
            target=self._monitor,
            args=(running, session_key, first_line_number),
            name=f"run-{run.run_id[:8]}-monitor",
            daemon=True,
        )
        with self._monitors_lock:
            self._monitors[run.run_id] = monitor
        monitor.start()
        return RunHandle(
            run_id=run.run_id,
            session_key=session_key,
            pid=process.pid,
            status=RunStatus.RUNNING,
        )

    def _resume_context(self, run: AgentRunView) -> tuple[str, int]:
        if run.parent_run_id is None:
            return "", 1
        parent = self.repository.find_run_by_id(run.parent_run_id)
        if parent is None:
            return "", 1
        return parent.session_id, self._transcript_watermark(parent) + 1

    def _transcript_watermark(self, run: AgentRunView) -> int:
        # Line numbers continue across the whole resume chain.
        return self.repository.get_last_line_number(run.run_id) or (
            self._transcript_watermark(self.repository.get_run(run.parent_run_id))
            if run.parent_run_id is not None
            else 0
        )

    def _build_command(
        self,
        run: AgentRunView,
        *,
        definition: AgentDefinition,
        resume_session: str,
    ) -> list[str]:
        template = (
            self.settings.resume_command_template
            if resume_session
            else self.settings.command_template
        )
        argv = build_run_args(
            command_template=template,
            prompt=run.task,
            system_prompt=definition.system_prompt,
            model=run.model,
            session_id=resume_session,
            binary_path=self.repository.get_setting(AGENT_BINARY_SETTING),
        )
        confined, _ = confine_or_fallback(
            self.confinement,
            argv,
            permissions=definition.permissions,
            project_path=Path(run.project_path),
        )
        return confined

    def _monitor(self, run: AgentRunView, session_key: str, first_line_number: int) -> None:
        processor = OutputStreamProcessor(
            repository=self.repository,
            registry=self.registry,
            notifications=self.notifications,
            model=run.model,
            assumed_utc_offset_hours=self.settings.assumed_utc_offset_hours,
        )
        drained = threading.Event()
        watchdog_fired = threading.Event()
        watchdog = threading.Thread(
            target=self._watchdog,
            args=(run.run_id, processor, drained, watchdog_fired),
            name=f"run-{run.run_id[:8]}-watchdog",
            daemon=True,
        )
        try:
            process = self.registry.take_process(session_key)
            if process is None:
                raise ProcessNotFound(session_key)
            watchdog.start()
            try:
                outcome = processor.process(
                    process,
                    run_id=run.run_id,
                    session_key=session_key,
                    first_line_number=first_line_number,
                )
            finally:
                drained.set()
                watchdog.join()
            if watchdog_fired.is_set():
                result = self.lifecycle.fail_running(run, reason="no output before watchdog")
            else:
                result = self.lifecycle.finalize(run, outcome)
            logger.info(
                "Run %s finished status=%s exit_code=%s lines=%d skipped=%d",
                run.run_id,
                result.status.value,
                outcome.exit_code,
                outcome.lines_persisted,
                outcome.lines_skipped,
            )
            self._emit_complete(run, result, outcome)
        except Exception:
            logger.exception("Monitor for run %s crashed", run.run_id)
            result = self.lifecycle.fail_running(run, reason="monitor error")
            self._emit_complete(run, result, None)
        finally:
            self.registry.unregister(processor.session_key or session_key)
            self.registry.unregister(session_key)
            with self._monitors_lock:
                self._monitors.pop(run.run_id, None)

    def _watchdog(
        self,
        run_id: str,
        processor: OutputStreamProcessor,
        drained: threading.Event,
        fired: threading.Event,
    ) -> None:
        timeout = self.settings.first_output_timeout_seconds
        deadline = time.monotonic() + timeout
        while not processor.first_output.is_set() and not drained.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            processor.first_output.wait(min(remaining, _WATCHDOG_POLL_SECONDS))
        if processor.first_output.is_set() or drained.is_set():
            return
        key = processor.session_key
        if not self.registry.is_alive(key):
            return
        fired.set()
        logger.warning("%s", WatchdogTimeout(run_id, timeout))
        try:
            self.registry.kill(key, grace_seconds=self.settings.kill_grace_seconds)
        except ProcessNotFound:
            logger.debug("Run %s exited before watchdog kill", run_id)

    def _emit_complete(
        self,
        run: AgentRunView,
        result: FinalizeResult,
        outcome: StreamOutcome | None,
    ) -> None:
        payload: dict[str, object] = {
            "status": result.status.value,
            "success": result.status == RunStatus.COMPLETED,
        }
        if outcome is not None:
            payload["exit_code"] = outcome.exit_code
            payload["lines_persisted"] = outcome.lines_persisted
            if outcome.resolved_reset_time is not None:
                payload["usage_limit_reset_time"] = outcome.resolved_reset_time.isoformat()
        if result.continuation is not None:
            payload["continuation_run_id"] = result.continuation.run_id
        self.notifications.emit(RUN_COMPLETE, run.run_id, payload)
