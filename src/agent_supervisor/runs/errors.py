"""Exception hierarchy for run supervision."""

from __future__ import annotations

from agent_supervisor.runs.models import RunStatus


class SupervisorError(RuntimeError):
    """Base class for supervision errors."""


class DefinitionNotFound(SupervisorError):
    """Requested agent definition does not exist."""

    def __init__(self, agent_id: str) -> None:
        super().__init__(f"Agent definition not found: {agent_id}")
        self.agent_id = agent_id


class RunNotFound(SupervisorError):
    """Requested run does not exist."""

    def __init__(self, run_id: str) -> None:
        super().__init__(f"Run not found: {run_id}")
        self.run_id = run_id


class ProcessSpawnError(SupervisorError):
    """External process could not be started, with retryability hint."""

    def __init__(self, message: str, *, transient: bool, run_id: str | None = None) -> None:
        super().__init__(message)
        self.transient = transient
        self.run_id = run_id


class PersistenceError(SupervisorError):
    """A single storage write failed."""


class RegistryConflict(SupervisorError):
    """A live process is already registered under the session key."""

    def __init__(self, session_key: str) -> None:
        super().__init__(f"Session already has a live process: {session_key}")
        self.session_key = session_key


class ProcessNotFound(SupervisorError):
    """No registry entry exists for the session key."""

    def __init__(self, session_key: str) -> None:
        super().__init__(f"No live process registered for session: {session_key}")
        self.session_key = session_key


class IllegalTransition(SupervisorError):
    """Requested status change is not an edge of the run state machine."""

    def __init__(self, run_id: str, source: RunStatus, target: RunStatus) -> None:
        super().__init__(
            f"Illegal run status transition for {run_id}: {source.value} -> {target.value}",
        )
        self.run_id = run_id
        self.source = source
        self.target = target


class WatchdogTimeout(SupervisorError):
    """Spawned process produced no output within the first-output window."""

    def __init__(self, run_id: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Run {run_id} produced no output within {timeout_seconds:g}s; process killed.",
        )
        self.run_id = run_id
        self.timeout_seconds = timeout_seconds


class ConfinementError(SupervisorError):
    """Confinement builder could not wrap the command."""
