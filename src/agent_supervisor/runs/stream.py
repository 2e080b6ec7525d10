"""Output Stream Processor: drain, persist, and mine a run's output channels."""

from __future__ import annotations

import json
import logging
import subprocess
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import IO

from sqlalchemy.exc import SQLAlchemyError

from agent_supervisor.runs.errors import PersistenceError, ProcessNotFound, RegistryConflict
from agent_supervisor.runs.metrics import RunMetrics, UsageAccumulator
from agent_supervisor.runs.notifications import RUN_ERROR, RUN_OUTPUT, NotificationSink
from agent_supervisor.runs.registry import ProcessRegistry
from agent_supervisor.runs.repository import RunRepository
from agent_supervisor.runs.usage_limit import UsageLimitTracker
from agent_supervisor.storage.common import utc_now

logger = logging.getLogger(__name__)

SESSION_ID_FIELDS: tuple[str, ...] = ("session_id", "sessionId")
_STDERR_TAIL_LINES = 20


@dataclass(slots=True)
class StreamOutcome:
    """Result of draining both output channels of one process."""

    exit_code: int | None
    exit_succeeded: bool
    usage_limit_detected: bool
    resolved_reset_time: datetime | None
    session_id: str | None
    session_key: str
    lines_persisted: int
    lines_skipped: int
    metrics: RunMetrics
    stderr_tail: str = ""


def extract_session_id(line: str) -> str | None:
    """First non-empty session handle field of a JSON record, if any."""

    stripped = line.strip()
    if not stripped.startswith("{"):
        return None
    try:
        record = json.loads(stripped)
    except ValueError:
        return None
    if not isinstance(record, dict):
        return None
    for key in SESSION_ID_FIELDS:
        value = record.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class OutputStreamProcessor:
    """Reads stdout (transcript) and stderr (diagnostics) of one process concurrently.

    Primary lines are numbered from ``first_line_number`` without gaps: a
    number is consumed only by a successful write, so a storage hiccup skips
    the line instead of leaving a hole. Both channels feed the usage-limit
    tracker; only stdout is persisted.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: RunRepository,
        registry: ProcessRegistry,
        notifications: NotificationSink,
        model: str,
        assumed_utc_offset_hours: float = -8.0,
    ) -> None:
        self.repository = repository
        self.registry = registry
        self.notifications = notifications
        self.model = model
        self.tracker = UsageLimitTracker(assumed_utc_offset_hours=assumed_utc_offset_hours)
        self.usage = UsageAccumulator()
        self.first_output = threading.Event()
        self._lock = threading.Lock()
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)
        self._session_id: str | None = None
        self._session_key = ""
        self._run_id = ""
        self._next_line_number = 1
        self._persisted = 0
        self._skipped = 0

    @property
    def session_key(self) -> str:
        with self._lock:
            return self._session_key

    def process(
        self,
        process: subprocess.Popen[str],
        *,
        run_id: str,
        session_key: str,
        first_line_number: int = 1,
    ) -> StreamOutcome:
        """Drain both channels to EOF, wait for exit, and summarize."""

        self._run_id = run_id
        self._session_key = session_key
        self._next_line_number = max(1, first_line_number)

        readers = [
            threading.Thread(
                target=self._drain,
                args=(process.stdout, self._handle_primary_line),
                name=f"run-{run_id[:8]}-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=self._drain,
                args=(process.stderr, self._handle_diagnostic_line),
                name=f"run-{run_id[:8]}-stderr",
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()
        for reader in readers:
            reader.join()
        exit_code = process.wait()

        resolution = self.tracker.result
        with self._lock:
            return StreamOutcome(
                exit_code=exit_code,
                exit_succeeded=exit_code == 0,
                usage_limit_detected=resolution.detected,
                resolved_reset_time=resolution.reset_at,
                session_id=self._session_id,
                session_key=self._session_key,
                lines_persisted=self._persisted,
                lines_skipped=self._skipped,
                metrics=self.usage.to_metrics(model=self.model),
                stderr_tail="\n".join(self._stderr_tail),
            )

    def _drain(self, pipe: IO[str] | None, handler) -> None:
        if pipe is None:
            return
        with pipe:
            for raw in iter(pipe.readline, ""):
                line = raw.rstrip("\r\n")
                self.first_output.set()
                if not line.strip():
                    continue
                try:
                    handler(line)
                except Exception:
                    logger.exception("Failed to handle output line of run %s", self._run_id)

    def _handle_primary_line(self, line: str) -> None:
        received_at = utc_now()
        self.registry.append_output(self.session_key, line)
        line_number = self._persist(line, received_at=received_at)
        self._capture_session_id(line)
        self.tracker.feed(line)
        self.usage.add_line(line, received_at=received_at)
        self.notifications.emit(
            RUN_OUTPUT,
            self._run_id,
            {"line": line, "line_number": line_number},
        )

    def _handle_diagnostic_line(self, line: str) -> None:
        with self._lock:
            self._stderr_tail.append(line)
        self.tracker.feed(line)
        self.notifications.emit(RUN_ERROR, self._run_id, {"line": line})

    def _persist(self, line: str, *, received_at: datetime) -> int | None:
        line_number = self._next_line_number
        try:
            self.repository.append_output_line(
                self._run_id,
                line_number,
                line,
                received_at=received_at,
            )
        except PersistenceError as error:
            logger.warning("Skipping transcript line of run %s: %s", self._run_id, error)
            with self._lock:
                self._skipped += 1
            self._resync_line_number()
            return None
        self._next_line_number = line_number + 1
        with self._lock:
            self._persisted += 1
        return line_number

    def _resync_line_number(self) -> None:
        try:
            stored = self.repository.get_last_line_number(self._run_id)
        except SQLAlchemyError:
            logger.debug("Cannot re-read last line number of run %s", self._run_id, exc_info=True)
            return
        self._next_line_number = max(self._next_line_number, stored + 1)

    def _capture_session_id(self, line: str) -> None:
        with self._lock:
            if self._session_id is not None:
                return
        session_id = extract_session_id(line)
        if session_id is None:
            return
        with self._lock:
            self._session_id = session_id
            old_key = self._session_key
        try:
            self.repository.update_session_id(self._run_id, session_id)
        except SQLAlchemyError:
            logger.warning(
                "Failed to record session %s for run %s",
                session_id,
                self._run_id,
                exc_info=True,
            )
        if old_key == session_id:
            return
        try:
            self.registry.rekey(old_key, session_id)
        except (RegistryConflict, ProcessNotFound) as error:
            logger.warning("Keeping registry key %s for run %s: %s", old_key, self._run_id, error)
            return
        with self._lock:
            self._session_key = session_id
        logger.debug("Run %s reported session %s", self._run_id, session_id)
