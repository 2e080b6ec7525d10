"""Runtime configuration for run supervision."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_COMMAND_TEMPLATE = (
    "claude -p {prompt} --system-prompt {system_prompt} --model {model} "
    "--output-format stream-json --verbose --dangerously-skip-permissions"
)
DEFAULT_RESUME_COMMAND_TEMPLATE = (
    "claude --resume {session_id} -p {prompt} --system-prompt {system_prompt} --model {model} "
    "--output-format stream-json --verbose --dangerously-skip-permissions"
)


@dataclass(slots=True)
class RunnerSettings:
    """Spawn, watchdog, and classification settings for supervised runs."""

    command_template: str = DEFAULT_COMMAND_TEMPLATE
    resume_command_template: str = DEFAULT_RESUME_COMMAND_TEMPLATE
    default_model: str = "sonnet"
    default_project_path: Path | None = None
    first_output_timeout_seconds: float = 30.0
    kill_grace_seconds: float = 5.0
    assumed_utc_offset_hours: float = -8.0
    confinement_prefix: str = ""
    auto_resume_default: bool = False


@dataclass(slots=True)
class SchedulerSettings:
    """Scheduler loop cadence."""

    interval_seconds: float = 30.0
    launch_delay_seconds: float = 2.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_supervisor.db")
    sqlite_busy_timeout_ms: int = 5_000
    runner: RunnerSettings = field(default_factory=RunnerSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        default_project_path = os.getenv("AGENT_SUPERVISOR_DEFAULT_PROJECT_PATH", "").strip()
        return cls(
            db_path=db_path
            or Path(os.getenv("AGENT_SUPERVISOR_DB_PATH", ".agent_supervisor.db")),
            sqlite_busy_timeout_ms=int(
                os.getenv("AGENT_SUPERVISOR_SQLITE_BUSY_TIMEOUT_MS", "5000"),
            ),
            runner=RunnerSettings(
                command_template=os.getenv(
                    "AGENT_SUPERVISOR_COMMAND_TEMPLATE",
                    DEFAULT_COMMAND_TEMPLATE,
                ),
                resume_command_template=os.getenv(
                    "AGENT_SUPERVISOR_RESUME_COMMAND_TEMPLATE",
                    DEFAULT_RESUME_COMMAND_TEMPLATE,
                ),
                default_model=os.getenv("AGENT_SUPERVISOR_DEFAULT_MODEL", "sonnet").strip()
                or "sonnet",
                default_project_path=(
                    Path(default_project_path) if default_project_path else None
                ),
                first_output_timeout_seconds=float(
                    os.getenv("AGENT_SUPERVISOR_FIRST_OUTPUT_TIMEOUT_SECONDS", "30"),
                ),
                kill_grace_seconds=float(os.getenv("AGENT_SUPERVISOR_KILL_GRACE_SECONDS", "5")),
                assumed_utc_offset_hours=float(
                    os.getenv("AGENT_SUPERVISOR_ASSUMED_UTC_OFFSET_HOURS", "-8"),
                ),
                confinement_prefix=os.getenv("AGENT_SUPERVISOR_CONFINEMENT_PREFIX", "").strip(),
                auto_resume_default=_env_bool("AGENT_SUPERVISOR_AUTO_RESUME", default=False),
            ),
            scheduler=SchedulerSettings(
                interval_seconds=float(
                    os.getenv("AGENT_SUPERVISOR_SCHEDULER_INTERVAL_SECONDS", "30"),
                ),
                launch_delay_seconds=float(
                    os.getenv("AGENT_SUPERVISOR_SCHEDULER_LAUNCH_DELAY_SECONDS", "2"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the supervisor cannot run with."""

        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_SUPERVISOR_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        for name, template in (
            ("AGENT_SUPERVISOR_COMMAND_TEMPLATE", self.runner.command_template),
            ("AGENT_SUPERVISOR_RESUME_COMMAND_TEMPLATE", self.runner.resume_command_template),
        ):
            if "{prompt}" not in template:
                raise ValueError(f"{name} must include {{prompt}}.")
        if "{session_id}" not in self.runner.resume_command_template:
            raise ValueError(
                "AGENT_SUPERVISOR_RESUME_COMMAND_TEMPLATE must include {session_id}.",
            )
        if self.runner.first_output_timeout_seconds <= 0:
            raise ValueError("AGENT_SUPERVISOR_FIRST_OUTPUT_TIMEOUT_SECONDS must be > 0.")
        if self.runner.kill_grace_seconds < 0:
            raise ValueError("AGENT_SUPERVISOR_KILL_GRACE_SECONDS must be >= 0.")
        if not -12 <= self.runner.assumed_utc_offset_hours <= 14:
            raise ValueError(
                "AGENT_SUPERVISOR_ASSUMED_UTC_OFFSET_HOURS must be within [-12, 14].",
            )
        if self.scheduler.interval_seconds <= 0:
            raise ValueError("AGENT_SUPERVISOR_SCHEDULER_INTERVAL_SECONDS must be > 0.")
        if self.scheduler.launch_delay_seconds < 0:
            raise ValueError("AGENT_SUPERVISOR_SCHEDULER_LAUNCH_DELAY_SECONDS must be >= 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
