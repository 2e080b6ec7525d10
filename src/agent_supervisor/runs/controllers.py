"""Controllers for agent, run, scheduler, and settings CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path

from agent_supervisor.config import Settings
from agent_supervisor.runs.metrics import compute_run_metrics, render_metrics_lines
from agent_supervisor.runs.models import (
    AgentDefinitionCreate,
    AgentPermissions,
    AgentRunView,
    RunStatus,
)
from agent_supervisor.runs.orchestrator import ExecutionOrchestrator
from agent_supervisor.runs.repository import RunRepository
from agent_supervisor.runs.scheduler import RunScheduler
from agent_supervisor.storage.common import from_iso, utc_now


@dataclass(slots=True)
class AgentAddCommand:
    """CLI input for registering an agent definition."""

    db_path: Path | None
    name: str
    system_prompt: str
    icon: str
    default_task: str | None
    model: str | None
    sandbox: bool
    file_read: bool
    file_write: bool
    network: bool


@dataclass(slots=True)
class AgentListCommand:
    db_path: Path | None


@dataclass(slots=True)
class RunStartCommand:
    """CLI input for an immediate run."""

    db_path: Path | None
    agent_id: str
    task: str | None
    project_path: Path | None
    model: str | None
    auto_resume: bool | None
    wait: bool
    timeout_seconds: float | None = None


@dataclass(slots=True)
class RunScheduleCommand:
    """CLI input for a deferred run."""

    db_path: Path | None
    agent_id: str
    task: str | None
    project_path: Path | None
    model: str | None
    auto_resume: bool | None
    start_at: str | None
    in_minutes: int | None


@dataclass(slots=True)
class RunListCommand:
    db_path: Path | None
    status: str | None
    agent_id: str | None
    limit: int
    output_format: str = "table"


@dataclass(slots=True)
class RunInspectCommand:
    db_path: Path | None
    run_id: str


@dataclass(slots=True)
class RunOutputCommand:
    db_path: Path | None
    run_id: str
    after_line: int
    follow_chain: bool


@dataclass(slots=True)
class RunMutateCommand:
    """CLI input for cancel/resume operations."""

    db_path: Path | None
    run_id: str
    wait: bool = False


@dataclass(slots=True)
class ReconcileCommand:
    db_path: Path | None


@dataclass(slots=True)
class SchedulerServeCommand:
    """CLI input for the scheduler loop."""

    db_path: Path | None
    once: bool
    max_ticks: int | None
    wait_runs: bool


@dataclass(slots=True)
class SettingGetCommand:
    db_path: Path | None
    key: str


@dataclass(slots=True)
class SettingSetCommand:
    db_path: Path | None
    key: str
    value: str


class RunsCliController:
    """Coordinates definition, run, scheduler, and settings CLI operations."""

    def add_agent(self, command: AgentAddCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            definition = repository.add_agent(
                AgentDefinitionCreate(
                    name=command.name,
                    system_prompt=command.system_prompt,
                    icon=command.icon,
                    default_task=command.default_task,
                    model=command.model or settings.runner.default_model,
                    permissions=AgentPermissions(
                        sandbox_enabled=command.sandbox,
                        file_read=command.file_read,
                        file_write=command.file_write,
                        network=command.network,
                    ),
                ),
            )
        return [
            f"Agent registered: agent_id={definition.agent_id} name={definition.name} "
            f"model={definition.model}",
        ]

    def list_agents(self, command: AgentListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            definitions = repository.list_agents()

        lines = [f"Agents: {len(definitions)}"]
        for definition in definitions:
            permissions = definition.permissions
            lines.append(
                f"  {definition.agent_id} {definition.icon or '-'} name={definition.name} "
                f"model={definition.model} sandbox={permissions.sandbox_enabled} "
                f"read={permissions.file_read} write={permissions.file_write} "
                f"network={permissions.network}",
            )
        return lines

    def start_run(self, command: RunStartCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            orchestrator = ExecutionOrchestrator(repository=repository, settings=settings.runner)
            handle = orchestrator.start(
                command.agent_id,
                command.task,
                command.project_path,
                model=command.model,
                auto_resume=command.auto_resume,
            )
            lines = [
                f"Run started: run_id={handle.run_id} pid={handle.pid} "
                f"session_key={handle.session_key}",
            ]
            if not command.wait:
                return lines
            if not orchestrator.wait(handle.run_id, timeout=command.timeout_seconds):
                lines.append(f"Run still running after {command.timeout_seconds}s")
                return lines
            lines.extend(_run_summary_lines(repository, repository.get_run(handle.run_id)))
        return lines

    def schedule_run(self, command: RunScheduleCommand) -> list[str]:
        settings = _settings(command.db_path)
        start_at = _resolve_start_at(command.start_at, command.in_minutes)
        with _repository(settings) as repository:
            orchestrator = ExecutionOrchestrator(repository=repository, settings=settings.runner)
            run = orchestrator.schedule(
                command.agent_id,
                command.task,
                command.project_path,
                start_at=start_at,
                model=command.model,
                auto_resume=command.auto_resume,
            )
        return [
            f"Run scheduled: run_id={run.run_id} agent={run.agent_name} "
            f"start_at={start_at.isoformat()}",
        ]

    def list_runs(self, command: RunListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            runs = repository.list_runs(
                status=status_filter,
                agent_id=command.agent_id,
                limit=command.limit,
            )

        if command.output_format == "json":
            return [
                json.dumps(
                    {"runs": [_run_payload(run) for run in runs], "count": len(runs)},
                    indent=2,
                    ensure_ascii=False,
                ),
            ]

        lines = [f"Runs: {len(runs)}"]
        for run in runs:
            lines.append(
                f"  {run.run_id} agent={run.agent_name} status={run.status.value} "
                f"model={run.model} resume={run.resume_count} "
                f"created_at={run.created_at.isoformat()}",
            )
        return lines

    def inspect_run(self, command: RunInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            run = repository.find_run_by_id(command.run_id)
            if run is None:
                return [f"Run not found: {command.run_id}"]
            children = repository.list_children(run.run_id)
            transcript = repository.get_output(run.run_id)

        metrics = compute_run_metrics(transcript, model=run.model)
        lines = [
            f"Run: {run.run_id}",
            f"Agent: {run.agent_icon + ' ' if run.agent_icon else ''}{run.agent_name}",
            f"Status: {run.status.value}",
            f"Task: {run.task}",
            f"Model: {run.model}",
            f"Project: {run.project_path}",
            f"Session: {run.session_id or '-'}",
            f"Pid: {run.pid if run.pid is not None else '-'}",
            f"Created: {run.created_at.isoformat()}",
            f"Started: {_iso_or_dash(run.process_started_at)}",
            f"Scheduled: {_iso_or_dash(run.scheduled_start_time)}",
            f"Completed: {_iso_or_dash(run.completed_at)}",
            f"Usage limit reset: {_iso_or_dash(run.usage_limit_reset_time)}",
            f"Auto resume: {run.auto_resume_enabled}",
            f"Resume count: {run.resume_count}",
            f"Parent: {run.parent_run_id or '-'}",
            f"Transcript lines: {len(transcript)}",
            "Metrics:",
            *render_metrics_lines(metrics),
            f"Continuations: {len(children)}",
        ]
        for child in children:
            lines.append(
                f"  {child.run_id} status={child.status.value} "
                f"scheduled={_iso_or_dash(child.scheduled_start_time)}",
            )
        return lines

    def run_output(self, command: RunOutputCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            run = repository.get_run(command.run_id)
            chain = _resume_chain(repository, run) if command.follow_chain else [run]
            lines: list[str] = []
            for member in chain:
                for line in repository.get_output(member.run_id, after_line=command.after_line):
                    lines.append(f"{line.line_number:>5} {line.content}")
        return lines

    def cancel_run(self, command: RunMutateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            orchestrator = ExecutionOrchestrator(repository=repository, settings=settings.runner)
            status = orchestrator.cancel(command.run_id)
        return [f"Run {command.run_id}: {status.value}"]

    def resume_run(self, command: RunMutateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            orchestrator = ExecutionOrchestrator(repository=repository, settings=settings.runner)
            handle = orchestrator.resume(command.run_id)
            lines = [
                f"Run {command.run_id} resumed as {handle.run_id} pid={handle.pid} "
                f"session_key={handle.session_key}",
            ]
            if command.wait:
                orchestrator.wait(handle.run_id)
                lines.extend(_run_summary_lines(repository, repository.get_run(handle.run_id)))
        return lines

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            orchestrator = ExecutionOrchestrator(repository=repository, settings=settings.runner)
            summary = orchestrator.reconcile()
        return [
            "Reconcile summary: "
            f"paused={summary.paused} completed={summary.completed} "
            f"failed={summary.failed} still_alive={summary.still_alive}",
        ]

    def serve_scheduler(self, command: SchedulerServeCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            orchestrator = ExecutionOrchestrator(repository=repository, settings=settings.runner)
            reconciled = orchestrator.reconcile()
            scheduler = RunScheduler(
                orchestrator,
                interval_seconds=settings.scheduler.interval_seconds,
                launch_delay_seconds=settings.scheduler.launch_delay_seconds,
            )
            summaries = scheduler.serve(max_ticks=1 if command.once else command.max_ticks)
            launched = [run_id for summary in summaries for run_id in summary.launched_run_ids]
            if command.wait_runs:
                for run_id in launched:
                    orchestrator.wait(run_id)

        return [
            "Scheduler summary: "
            f"ticks={len(summaries)} "
            f"due={sum(summary.due for summary in summaries)} "
            f"launched={len(launched)} "
            f"lost_races={sum(summary.lost_races for summary in summaries)} "
            f"failed={sum(summary.failed for summary in summaries)} "
            f"reconciled={reconciled.paused + reconciled.completed + reconciled.failed}",
        ]

    def get_setting(self, command: SettingGetCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            value = repository.get_setting(command.key)
        return [f"{command.key}={value if value is not None else '-'}"]

    def set_setting(self, command: SettingSetCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            repository.set_setting(command.key, command.value)
        return [f"Setting saved: {command.key}={command.value}"]


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _parse_status(value: str | None) -> RunStatus | None:
    if value is None:
        return None
    try:
        return RunStatus(value.strip().lower())
    except ValueError as error:
        raise ValueError(f"Unsupported run status: {value!r}") from error


def _resolve_start_at(start_at: str | None, in_minutes: int | None) -> datetime:
    if start_at and in_minutes is not None:
        raise ValueError("Use either --at or --in-minutes, not both.")
    if start_at:
        try:
            return from_iso(start_at)
        except ValueError as error:
            raise ValueError(f"Invalid --at datetime: {start_at!r}") from error
    return utc_now() + timedelta(minutes=in_minutes or 0)


def _resume_chain(repository: RunRepository, run: AgentRunView) -> list[AgentRunView]:
    chain = [run]
    while chain[0].parent_run_id is not None:
        parent = repository.find_run_by_id(chain[0].parent_run_id)
        if parent is None:
            break
        chain.insert(0, parent)
    return chain


def _run_summary_lines(repository: RunRepository, run: AgentRunView) -> list[str]:
    lines = [f"Run finished: run_id={run.run_id} status={run.status.value}"]
    if run.status == RunStatus.PAUSED_USAGE_LIMIT:
        lines.append(f"Usage limit resets at {_iso_or_dash(run.usage_limit_reset_time)}")
        for child in repository.list_children(run.run_id):
            lines.append(
                f"Continuation: run_id={child.run_id} status={child.status.value} "
                f"scheduled={_iso_or_dash(child.scheduled_start_time)}",
            )
    return lines


def _run_payload(run: AgentRunView) -> dict[str, object]:
    return {
        "run_id": run.run_id,
        "agent_id": run.agent_id,
        "agent_name": run.agent_name,
        "status": run.status.value,
        "model": run.model,
        "session_id": run.session_id or None,
        "created_at": run.created_at.isoformat(),
        "completed_at": run.completed_at.isoformat() if run.completed_at else None,
        "scheduled_start_time": (
            run.scheduled_start_time.isoformat() if run.scheduled_start_time else None
        ),
        "resume_count": run.resume_count,
        "parent_run_id": run.parent_run_id,
    }


def _iso_or_dash(value: datetime | None) -> str:
    return value.isoformat() if value is not None else "-"


@contextmanager
def _repository(settings: Settings) -> Iterator[RunRepository]:
    repository = RunRepository(
        db_path=settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
