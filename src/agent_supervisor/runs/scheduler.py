"""Scheduler Loop: claim due scheduled runs exactly once and launch them."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from agent_supervisor.runs.errors import SupervisorError
from agent_supervisor.runs.models import RunStatus
from agent_supervisor.runs.orchestrator import ExecutionOrchestrator
from agent_supervisor.storage.common import utc_now

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class SchedulerTickSummary:
    """What one tick did."""

    due: int = 0
    claimed: int = 0
    launched: int = 0
    lost_races: int = 0
    failed: int = 0
    launched_run_ids: list[str] = field(default_factory=list)


class RunScheduler:
    """Fixed-interval loop over ``scheduled`` runs.

    The claim is a single conditional ``scheduled -> pending`` update, so
    concurrent ticks (or processes sharing the database) launch each run at
    most once. A claim or launch error leaves the run ``failed`` rather than
    stuck.
    """

    def __init__(
        self,
        orchestrator: ExecutionOrchestrator,
        *,
        interval_seconds: float = 30.0,
        launch_delay_seconds: float = 2.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.orchestrator = orchestrator
        self.repository = orchestrator.repository
        self.lifecycle = orchestrator.lifecycle
        self.interval_seconds = interval_seconds
        self.launch_delay_seconds = launch_delay_seconds
        self._clock = clock
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._stop_signal_name: str | None = None

    def run_once(self, now: datetime | None = None) -> SchedulerTickSummary:
        summary = SchedulerTickSummary()
        due_runs = self.repository.list_due_scheduled(now=now or self._clock())
        summary.due = len(due_runs)
        for index, run in enumerate(due_runs):
            if self._stop.is_set():
                break
            if index and summary.launched and self.launch_delay_seconds > 0:
                if self._stop.wait(self.launch_delay_seconds):
                    break
            try:
                claimed = self.lifecycle.claim(run.run_id)
            except (SupervisorError, SQLAlchemyError) as error:
                logger.warning("Claim of run %s failed: %s", run.run_id, error)
                self._fail(run.run_id, expected=RunStatus.SCHEDULED, reason=str(error))
                summary.failed += 1
                continue
            if not claimed:
                summary.lost_races += 1
                continue
            summary.claimed += 1
            try:
                handle = self.orchestrator.launch_claimed(run.run_id)
            except (SupervisorError, SQLAlchemyError) as error:
                logger.warning("Launch of run %s failed: %s", run.run_id, error)
                self._fail(run.run_id, expected=RunStatus.PENDING, reason=str(error))
                summary.failed += 1
                continue
            summary.launched += 1
            summary.launched_run_ids.append(handle.run_id)
        if summary.due:
            logger.info(
                "Scheduler tick: due=%d claimed=%d launched=%d lost=%d failed=%d",
                summary.due,
                summary.claimed,
                summary.launched,
                summary.lost_races,
                summary.failed,
            )
        return summary

    def serve(self, *, max_ticks: int | None = None) -> list[SchedulerTickSummary]:
        """Run ticks in the calling thread until stopped, signalled, or ``max_ticks``."""

        summaries: list[SchedulerTickSummary] = []
        with self._signal_handlers():
            while not self._stop.is_set():
                summaries.append(self.run_once())
                if max_ticks is not None and len(summaries) >= max_ticks:
                    break
                self._stop.wait(self.interval_seconds)
        if self._stop_signal_name is not None:
            logger.info("Scheduler stopped by %s", self._stop_signal_name)
        return summaries

    def start(self) -> None:
        """Run the loop on a background daemon thread."""

        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._loop,
            name="run-scheduler",
            daemon=True,
        )
        self._thread.start()
        logger.info("Scheduler thread started interval=%.1fs", self.interval_seconds)

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
            logger.info("Scheduler thread stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                logger.exception("Scheduler tick failed")
            self._stop.wait(self.interval_seconds)

    def _fail(self, run_id: str, *, expected: RunStatus, reason: str) -> None:
        try:
            self.lifecycle.fail(run_id, expected=expected, reason=reason)
        except (SupervisorError, SQLAlchemyError):
            logger.exception("Cannot mark run %s failed", run_id)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            self._stop_signal_name = signal.Signals(signum).name
            self._stop.set()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
