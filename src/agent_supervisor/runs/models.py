"""Domain models for supervised agent runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class RunStatus(str, Enum):
    """Durable run lifecycle states (wire strings are stored as-is)."""

    SCHEDULED = "scheduled"
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED_USAGE_LIMIT = "paused_usage_limit"

    @classmethod
    def from_wire(cls, value: str | None) -> RunStatus:
        """Map a stored status string to the enum; unknown values read as pending."""

        if value is None:
            return cls.PENDING
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.PENDING

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})


@dataclass(slots=True, frozen=True)
class AgentPermissions:
    """Permission flags handed to the confinement builder."""

    sandbox_enabled: bool = False
    file_read: bool = True
    file_write: bool = True
    network: bool = False


@dataclass(slots=True)
class AgentDefinitionCreate:
    """Input payload for registering an agent definition."""

    name: str
    system_prompt: str
    icon: str = ""
    default_task: str | None = None
    model: str = "sonnet"
    permissions: AgentPermissions = field(default_factory=AgentPermissions)
    agent_id: str | None = None


@dataclass(slots=True)
class AgentDefinition:
    """Agent definition as consumed by the orchestrator."""

    agent_id: str
    name: str
    icon: str
    system_prompt: str
    default_task: str | None
    model: str
    permissions: AgentPermissions
    created_at: datetime


@dataclass(slots=True)
class AgentRunCreate:
    """Input payload for inserting a run row."""

    agent_id: str
    agent_name: str
    task: str
    model: str
    project_path: str
    agent_icon: str = ""
    status: RunStatus = RunStatus.PENDING
    scheduled_start_time: datetime | None = None
    auto_resume_enabled: bool = False
    resume_count: int = 0
    parent_run_id: str | None = None
    session_id: str = ""
    run_id: str | None = None


@dataclass(slots=True)
class AgentRunView:
    """Readable run view for CLI, orchestrator, and scheduler logic."""

    run_id: str
    agent_id: str
    agent_name: str
    agent_icon: str
    task: str
    model: str
    project_path: str
    session_id: str
    status: RunStatus
    pid: int | None
    process_started_at: datetime | None
    scheduled_start_time: datetime | None
    created_at: datetime
    completed_at: datetime | None
    usage_limit_reset_time: datetime | None
    auto_resume_enabled: bool
    resume_count: int
    parent_run_id: str | None
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


@dataclass(slots=True)
class OutputLineView:
    """One persisted transcript line."""

    run_id: str
    line_number: int
    content: str
    received_at: datetime


@dataclass(slots=True)
class RunHandle:
    """What a caller gets back from starting a run; monitoring continues detached."""

    run_id: str
    session_key: str
    pid: int
    status: RunStatus

