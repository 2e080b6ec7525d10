"""CLI entrypoint for agent-supervisor."""

from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from agent_supervisor import __version__
from agent_supervisor.logging_config import LOG_LEVELS, configure_logging
from agent_supervisor.runs.controllers import (
    AgentAddCommand,
    AgentListCommand,
    ReconcileCommand,
    RunInspectCommand,
    RunListCommand,
    RunMutateCommand,
    RunOutputCommand,
    RunScheduleCommand,
    RunsCliController,
    RunStartCommand,
    SchedulerServeCommand,
    SettingGetCommand,
    SettingSetCommand,
)
from agent_supervisor.runs.errors import SupervisorError
from agent_supervisor.runs.models import RunStatus

click.rich_click.USE_MARKDOWN = True
RUNS_CONTROLLER = RunsCliController()
CommandT = TypeVar("CommandT")

_db_path_option = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path. Defaults to AGENT_SUPERVISOR_DB_PATH.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-supervisor")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Log verbosity on stderr.",
)
def agent_supervisor(log_level: str) -> None:
    """Supervise long-running CLI coding agent runs.

    Runs are persisted in SQLite; usage-limit pauses can be resumed
    automatically by `agent-supervisor scheduler serve`.
    """

    configure_logging(log_level)


@agent_supervisor.group()
def agents() -> None:
    """Agent definition commands."""


@agents.command("add")
@_db_path_option
@click.option("--name", required=True, help="Agent display name.")
@click.option("--system-prompt", required=True, help="System prompt passed to every run.")
@click.option("--icon", default="", help="Optional icon shown next to the name.")
@click.option("--default-task", default=None, help="Task used when a run has none.")
@click.option("--model", default=None, help="Model id; defaults to the configured model.")
@click.option(
    "--sandbox/--no-sandbox",
    default=False,
    show_default=True,
    help="Wrap runs with the configured confinement prefix.",
)
@click.option("--file-read/--no-file-read", default=True, show_default=True)
@click.option("--file-write/--no-file-write", default=True, show_default=True)
@click.option("--network/--no-network", default=False, show_default=True)
def agents_add(  # noqa: PLR0913
    db_path: Path | None,
    name: str,
    system_prompt: str,
    icon: str,
    default_task: str | None,
    model: str | None,
    sandbox: bool,
    file_read: bool,
    file_write: bool,
    network: bool,
) -> None:
    """Register an agent definition."""

    _run_command(
        RUNS_CONTROLLER.add_agent,
        AgentAddCommand(
            db_path=db_path,
            name=name,
            system_prompt=system_prompt,
            icon=icon,
            default_task=default_task,
            model=model,
            sandbox=sandbox,
            file_read=file_read,
            file_write=file_write,
            network=network,
        ),
    )


@agents.command("list")
@_db_path_option
def agents_list(db_path: Path | None) -> None:
    """List agent definitions."""

    _run_command(RUNS_CONTROLLER.list_agents, AgentListCommand(db_path=db_path))


@agent_supervisor.group()
def runs() -> None:
    """Run commands."""


@runs.command("start")
@_db_path_option
@click.argument("agent_id")
@click.option("--task", default=None, help="Task prompt; defaults to the agent's default task.")
@click.option(
    "--project-path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory of the agent process.",
)
@click.option("--model", default=None, help="Model override for this run.")
@click.option(
    "--auto-resume/--no-auto-resume",
    default=None,
    help="Schedule a continuation when the usage limit is hit.",
)
@click.option(
    "--wait/--detach",
    default=True,
    show_default=True,
    help=(
        "Wait for the run to finish. A detached run outlives this command unsupervised; "
        "`runs reconcile` settles it later."
    ),
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Stop waiting after this many seconds.",
)
def runs_start(  # noqa: PLR0913
    db_path: Path | None,
    agent_id: str,
    task: str | None,
    project_path: Path | None,
    model: str | None,
    auto_resume: bool | None,
    wait: bool,
    timeout_seconds: float | None,
) -> None:
    """Start a run now."""

    _run_command(
        RUNS_CONTROLLER.start_run,
        RunStartCommand(
            db_path=db_path,
            agent_id=agent_id,
            task=task,
            project_path=project_path,
            model=model,
            auto_resume=auto_resume,
            wait=wait,
            timeout_seconds=timeout_seconds,
        ),
    )


@runs.command("schedule")
@_db_path_option
@click.argument("agent_id")
@click.option("--task", default=None, help="Task prompt; defaults to the agent's default task.")
@click.option(
    "--project-path",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Working directory of the agent process.",
)
@click.option("--model", default=None, help="Model override for this run.")
@click.option("--auto-resume/--no-auto-resume", default=None)
@click.option("--at", "start_at", default=None, help="ISO datetime; naive values are UTC.")
@click.option(
    "--in-minutes",
    type=click.IntRange(min=0),
    default=None,
    help="Start this many minutes from now.",
)
def runs_schedule(  # noqa: PLR0913
    db_path: Path | None,
    agent_id: str,
    task: str | None,
    project_path: Path | None,
    model: str | None,
    auto_resume: bool | None,
    start_at: str | None,
    in_minutes: int | None,
) -> None:
    """Schedule a run for the scheduler loop."""

    _run_command(
        RUNS_CONTROLLER.schedule_run,
        RunScheduleCommand(
            db_path=db_path,
            agent_id=agent_id,
            task=task,
            project_path=project_path,
            model=model,
            auto_resume=auto_resume,
            start_at=start_at,
            in_minutes=in_minutes,
        ),
    )


@runs.command("list")
@_db_path_option
@click.option(
    "--status",
    type=click.Choice([status.value for status in RunStatus], case_sensitive=False),
    default=None,
)
@click.option("--agent-id", default=None, help="Only runs of this agent.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
)
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["table", "json"], case_sensitive=False),
    default="table",
    show_default=True,
)
def runs_list(
    db_path: Path | None,
    status: str | None,
    agent_id: str | None,
    limit: int,
    output_format: str,
) -> None:
    """List runs, newest first."""

    _run_command(
        RUNS_CONTROLLER.list_runs,
        RunListCommand(
            db_path=db_path,
            status=status,
            agent_id=agent_id,
            limit=limit,
            output_format=output_format.lower(),
        ),
    )


@runs.command("inspect")
@_db_path_option
@click.argument("run_id")
def runs_inspect(db_path: Path | None, run_id: str) -> None:
    """Show one run with derived metrics and continuations."""

    _run_command(RUNS_CONTROLLER.inspect_run, RunInspectCommand(db_path=db_path, run_id=run_id))


@runs.command("output")
@_db_path_option
@click.argument("run_id")
@click.option(
    "--after-line",
    type=click.IntRange(min=0),
    default=0,
    show_default=True,
    help="Only lines with a greater line number.",
)
@click.option(
    "--chain/--no-chain",
    "follow_chain",
    default=False,
    show_default=True,
    help="Include the transcripts of the paused runs this one resumes.",
)
def runs_output(db_path: Path | None, run_id: str, after_line: int, follow_chain: bool) -> None:
    """Print the persisted transcript of a run."""

    _run_command(
        RUNS_CONTROLLER.run_output,
        RunOutputCommand(
            db_path=db_path,
            run_id=run_id,
            after_line=after_line,
            follow_chain=follow_chain,
        ),
    )


@runs.command("cancel")
@_db_path_option
@click.argument("run_id")
def runs_cancel(db_path: Path | None, run_id: str) -> None:
    """Cancel a scheduled or running run."""

    _run_command(RUNS_CONTROLLER.cancel_run, RunMutateCommand(db_path=db_path, run_id=run_id))


@runs.command("resume")
@_db_path_option
@click.argument("run_id")
@click.option("--wait/--detach", default=True, show_default=True)
def runs_resume(db_path: Path | None, run_id: str, wait: bool) -> None:
    """Resume a usage-limit paused run now."""

    _run_command(
        RUNS_CONTROLLER.resume_run,
        RunMutateCommand(db_path=db_path, run_id=run_id, wait=wait),
    )


@runs.command("reconcile")
@_db_path_option
def runs_reconcile(db_path: Path | None) -> None:
    """Settle runs left `running` by a previous supervisor process."""

    _run_command(RUNS_CONTROLLER.reconcile, ReconcileCommand(db_path=db_path))


@agent_supervisor.group()
def scheduler() -> None:
    """Scheduler commands."""


@scheduler.command("serve")
@_db_path_option
@click.option("--once", is_flag=True, default=False, help="Run a single tick and exit.")
@click.option(
    "--max-ticks",
    type=click.IntRange(min=1),
    default=None,
    help="Exit after this many ticks.",
)
@click.option(
    "--wait-runs/--no-wait-runs",
    default=True,
    show_default=True,
    help="Wait for launched runs to finish before exiting.",
)
def scheduler_serve(
    db_path: Path | None,
    once: bool,
    max_ticks: int | None,
    wait_runs: bool,
) -> None:
    """Reconcile orphaned runs, then launch due scheduled runs until stopped."""

    _run_command(
        RUNS_CONTROLLER.serve_scheduler,
        SchedulerServeCommand(
            db_path=db_path,
            once=once,
            max_ticks=max_ticks,
            wait_runs=wait_runs,
        ),
    )


@agent_supervisor.group()
def settings() -> None:
    """Persisted key/value settings."""


@settings.command("get")
@_db_path_option
@click.argument("key")
def settings_get(db_path: Path | None, key: str) -> None:
    """Show a setting value."""

    _run_command(RUNS_CONTROLLER.get_setting, SettingGetCommand(db_path=db_path, key=key))


@settings.command("set")
@_db_path_option
@click.argument("key")
@click.argument("value")
def settings_set(db_path: Path | None, key: str, value: str) -> None:
    """Store a setting, for example `agent_binary_path`."""

    _run_command(
        RUNS_CONTROLLER.set_setting,
        SettingSetCommand(db_path=db_path, key=key, value=value),
    )


def _run_command(handler: Callable[[CommandT], list[str]], command: CommandT) -> None:
    try:
        lines = handler(command)
    except (SupervisorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_supervisor()
