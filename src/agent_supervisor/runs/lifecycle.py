"""Run Lifecycle Controller: the only writer of run status."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime

from agent_supervisor.runs.errors import IllegalTransition
from agent_supervisor.runs.models import (
    AgentRunCreate,
    AgentRunView,
    OutputLineView,
    RunStatus,
)
from agent_supervisor.runs.repository import RunRepository
from agent_supervisor.runs.stream import StreamOutcome
from agent_supervisor.runs.usage_limit import UsageLimitTracker
from agent_supervisor.storage.common import utc_now

logger = logging.getLogger(__name__)

LEGAL_TRANSITIONS: dict[RunStatus, frozenset[RunStatus]] = {
    RunStatus.SCHEDULED: frozenset({RunStatus.PENDING, RunStatus.CANCELLED, RunStatus.FAILED}),
    RunStatus.PENDING: frozenset({RunStatus.RUNNING, RunStatus.FAILED}),
    RunStatus.RUNNING: frozenset(
        {
            RunStatus.COMPLETED,
            RunStatus.FAILED,
            RunStatus.CANCELLED,
            RunStatus.PAUSED_USAGE_LIMIT,
        },
    ),
    RunStatus.PAUSED_USAGE_LIMIT: frozenset(),
    RunStatus.COMPLETED: frozenset(),
    RunStatus.FAILED: frozenset(),
    RunStatus.CANCELLED: frozenset(),
}
_STAMPS_COMPLETION = frozenset(
    {
        RunStatus.COMPLETED,
        RunStatus.FAILED,
        RunStatus.CANCELLED,
        RunStatus.PAUSED_USAGE_LIMIT,
    },
)


def is_legal_transition(source: RunStatus, target: RunStatus) -> bool:
    return target in LEGAL_TRANSITIONS[source]


@dataclass(slots=True)
class FinalizeResult:
    """What the monitor learns after asking for the final transition."""

    status: RunStatus
    applied: bool
    continuation: AgentRunView | None = None


@dataclass(slots=True)
class CancelResult:
    status: RunStatus
    changed: bool
    was_running: bool


class RunLifecycleController:
    """State machine over the Run Store.

    Every write names its expected source status. An edge outside
    ``LEGAL_TRANSITIONS`` raises ``IllegalTransition``; a legal edge whose
    source no longer matches the stored row is a lost race and returns
    ``False``.
    """

    def __init__(self, repository: RunRepository) -> None:
        self.repository = repository

    def transition(
        self,
        run_id: str,
        target: RunStatus,
        *,
        expected: RunStatus,
        pid: int | None = None,
        process_started_at: datetime | None = None,
    ) -> bool:
        if not is_legal_transition(expected, target):
            raise IllegalTransition(run_id, expected, target)
        if target in _STAMPS_COMPLETION:
            changed = self.repository.update_completion(run_id, target, expected_status=expected)
        else:
            changed = self.repository.update_status(
                run_id,
                target,
                expected_status=expected,
                pid=pid,
                process_started_at=process_started_at,
            )
        if changed:
            logger.info("Run %s: %s -> %s", run_id, expected.value, target.value)
        else:
            logger.debug(
                "Run %s: lost race for %s -> %s",
                run_id,
                expected.value,
                target.value,
            )
        return changed

    def claim(self, run_id: str) -> bool:
        """Scheduler claim; ``False`` means another tick or instance won."""

        return self.transition(run_id, RunStatus.PENDING, expected=RunStatus.SCHEDULED)

    def mark_running(self, run_id: str, *, pid: int, started_at: datetime | None = None) -> bool:
        return self.transition(
            run_id,
            RunStatus.RUNNING,
            expected=RunStatus.PENDING,
            pid=pid,
            process_started_at=started_at or utc_now(),
        )

    def fail(self, run_id: str, *, expected: RunStatus, reason: str) -> bool:
        changed = self.transition(run_id, RunStatus.FAILED, expected=expected)
        if changed:
            logger.warning("Run %s failed: %s", run_id, reason)
        return changed

    def cancel(self, run_id: str) -> CancelResult:
        """Cancel a scheduled or running run; terminal runs are a no-op."""

        run = self.repository.get_run(run_id)
        if run.status.is_terminal:
            return CancelResult(status=run.status, changed=False, was_running=False)
        if run.status not in {RunStatus.SCHEDULED, RunStatus.RUNNING}:
            raise IllegalTransition(run_id, run.status, RunStatus.CANCELLED)
        changed = self.transition(run_id, RunStatus.CANCELLED, expected=run.status)
        if changed:
            return CancelResult(
                status=RunStatus.CANCELLED,
                changed=True,
                was_running=run.status == RunStatus.RUNNING,
            )
        current = self.repository.get_run(run_id)
        if current.status.is_terminal:
            return CancelResult(status=current.status, changed=False, was_running=False)
        # The row moved between read and write (claimed, or launched); cancel against its new state.
        return self.cancel(run_id)

    def finalize(self, run: AgentRunView, outcome: StreamOutcome) -> FinalizeResult:
        """Final transition for a running run whose process has exited."""

        if outcome.usage_limit_detected:
            return self.pause_for_usage_limit(run, reset_at=outcome.resolved_reset_time)
        target = RunStatus.COMPLETED if outcome.exit_succeeded else RunStatus.FAILED
        applied = self.transition(run.run_id, target, expected=RunStatus.RUNNING)
        return FinalizeResult(
            status=self._current_status(run.run_id, target, applied),
            applied=applied,
        )

    def fail_running(self, run: AgentRunView, *, reason: str) -> FinalizeResult:
        applied = self.fail(run.run_id, expected=RunStatus.RUNNING, reason=reason)
        return FinalizeResult(
            status=self._current_status(run.run_id, RunStatus.FAILED, applied),
            applied=applied,
        )

    def pause_for_usage_limit(
        self,
        run: AgentRunView,
        *,
        reset_at: datetime | None,
    ) -> FinalizeResult:
        applied = self.transition(
            run.run_id,
            RunStatus.PAUSED_USAGE_LIMIT,
            expected=RunStatus.RUNNING,
        )
        if not applied:
            return FinalizeResult(
                status=self._current_status(run.run_id, RunStatus.PAUSED_USAGE_LIMIT, applied),
                applied=False,
            )
        effective_reset = reset_at or utc_now()
        self.repository.update_usage_limit(
            run.run_id,
            effective_reset,
            run.auto_resume_enabled,
        )
        logger.warning(
            "Run %s hit the usage limit; resets at %s",
            run.run_id,
            effective_reset.isoformat(),
        )
        continuation = None
        if run.auto_resume_enabled:
            continuation = self.create_continuation(
                run,
                status=RunStatus.SCHEDULED,
                scheduled_start_time=effective_reset,
                auto_resume=True,
            )
        return FinalizeResult(
            status=RunStatus.PAUSED_USAGE_LIMIT,
            applied=True,
            continuation=continuation,
        )

    def create_continuation(
        self,
        parent: AgentRunView,
        *,
        status: RunStatus,
        scheduled_start_time: datetime | None = None,
        auto_resume: bool = True,
    ) -> AgentRunView | None:
        """New run resuming a paused parent; ``None`` if the parent is no longer paused."""

        if status == RunStatus.SCHEDULED and scheduled_start_time is None:
            raise ValueError("Scheduled continuations need scheduled_start_time.")
        continuation = self.repository.create_continuation(
            AgentRunCreate(
                agent_id=parent.agent_id,
                agent_name=parent.agent_name,
                agent_icon=parent.agent_icon,
                task=parent.task,
                model=parent.model,
                project_path=parent.project_path,
                status=status,
                scheduled_start_time=scheduled_start_time,
                auto_resume_enabled=auto_resume,
                resume_count=parent.resume_count + 1,
                parent_run_id=parent.run_id,
            ),
        )
        if continuation is None:
            logger.warning("Run %s is no longer paused; continuation not created", parent.run_id)
            return None
        logger.info(
            "Continuation %s of run %s created as %s (resume #%d)",
            continuation.run_id,
            parent.run_id,
            status.value,
            continuation.resume_count,
        )
        return continuation

    def reconcile_orphan(
        self,
        run: AgentRunView,
        *,
        transcript: list[OutputLineView],
        assumed_utc_offset_hours: float = -8.0,
    ) -> FinalizeResult:
        """Settle a ``running`` row whose process died while nobody supervised it."""

        tracker = UsageLimitTracker(assumed_utc_offset_hours=assumed_utc_offset_hours)
        for line in transcript:
            tracker.feed(line.content)
        resolution = tracker.result
        if resolution.detected:
            return self.pause_for_usage_limit(run, reset_at=resolution.reset_at)
        if _has_success_result(transcript):
            applied = self.transition(run.run_id, RunStatus.COMPLETED, expected=RunStatus.RUNNING)
            return FinalizeResult(
                status=self._current_status(run.run_id, RunStatus.COMPLETED, applied),
                applied=applied,
            )
        return self.fail_running(run, reason="process exited while unsupervised")

    def _current_status(self, run_id: str, target: RunStatus, applied: bool) -> RunStatus:
        if applied:
            return target
        current = self.repository.find_run_by_id(run_id)
        return current.status if current is not None else target


def _has_success_result(transcript: list[OutputLineView]) -> bool:
    for line in reversed(transcript):
        try:
            record = json.loads(line.content)
        except ValueError:
            continue
        if not isinstance(record, dict) or record.get("type") != "result":
            continue
        return record.get("subtype") == "success" and not record.get("is_error", False)
    return False
