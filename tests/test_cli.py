from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner
from conftest import fake_agent_resume_template, fake_agent_template

from agent_supervisor.main import agent_supervisor
from agent_supervisor.runs.models import RunStatus
from agent_supervisor.runs.repository import RunRepository

pytestmark = [
    allure.epic("Run Supervision"),
    allure.feature("CLI"),
]


@pytest.fixture()
def cli_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    db_path = tmp_path / "cli.db"
    monkeypatch.setenv("AGENT_SUPERVISOR_DB_PATH", str(db_path))
    monkeypatch.setenv("AGENT_SUPERVISOR_COMMAND_TEMPLATE", fake_agent_template("ok"))
    monkeypatch.setenv("AGENT_SUPERVISOR_RESUME_COMMAND_TEMPLATE", fake_agent_resume_template())
    monkeypatch.setenv("AGENT_SUPERVISOR_DEFAULT_PROJECT_PATH", str(tmp_path))
    monkeypatch.setenv("AGENT_SUPERVISOR_SCHEDULER_LAUNCH_DELAY_SECONDS", "0")
    return db_path


def _invoke(*args: str):
    result = CliRunner().invoke(agent_supervisor, list(args))
    assert result.exit_code == 0, result.output
    return result


def _add_agent() -> str:
    result = _invoke(
        "agents",
        "add",
        "--name",
        "Coder",
        "--system-prompt",
        "Write code.",
        "--default-task",
        "Tidy imports",
    )
    match = re.search(r"agent_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def test_agent_run_inspect_and_output_flow(cli_env: Path) -> None:
    agent_id = _add_agent()

    started = _invoke("runs", "start", agent_id, "--task", "Add a CLI test")
    run_id = re.search(r"run_id=(\S+)", started.output).group(1)

    assert f"Run finished: run_id={run_id} status=completed" in started.output
    listed = json.loads(_invoke("runs", "list", "--format", "json").output)
    assert listed["count"] == 1
    assert listed["runs"][0]["status"] == "completed"
    inspected = _invoke("runs", "inspect", run_id).output
    assert "Status: completed" in inspected
    assert "Task: Add a CLI test" in inspected
    assert "tokens total=150" in inspected
    output = _invoke("runs", "output", run_id, "--after-line", "1").output.splitlines()
    assert [line.split()[0] for line in output] == ["2", "3"]
    assert "Coder" in _invoke("agents", "list").output
    cancelled = _invoke("runs", "cancel", run_id)
    assert f"Run {run_id}: completed" in cancelled.output


def test_schedule_then_scheduler_once(cli_env: Path) -> None:
    agent_id = _add_agent()

    scheduled = _invoke("runs", "schedule", agent_id, "--in-minutes", "0")
    run_id = re.search(r"run_id=(\S+)", scheduled.output).group(1)
    served = _invoke("scheduler", "serve", "--once")

    assert "launched=1" in served.output
    repository = RunRepository(cli_env)
    try:
        assert repository.get_run(run_id).status == RunStatus.COMPLETED
        assert repository.get_run(run_id).task == "Tidy imports"
    finally:
        repository.close()


def test_usage_limit_pause_and_manual_resume(
    cli_env: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setenv("AGENT_SUPERVISOR_COMMAND_TEMPLATE", fake_agent_template("usage-limit"))
    agent_id = _add_agent()

    started = _invoke("runs", "start", agent_id, "--auto-resume")
    run_id = re.search(r"run_id=(\S+)", started.output).group(1)

    assert "status=paused_usage_limit" in started.output
    assert "Continuation: run_id=" in started.output
    resumed = _invoke("runs", "resume", run_id)
    assert "status=completed" in resumed.output
    child_id = re.search(r"resumed as (\S+)", resumed.output).group(1)
    chain = _invoke("runs", "output", child_id, "--chain").output.splitlines()
    numbers = [int(line.split()[0]) for line in chain]
    assert numbers == list(range(1, len(numbers) + 1))


def test_settings_round_trip(cli_env: Path) -> None:
    assert "agent_binary_path=-" in _invoke("settings", "get", "agent_binary_path").output

    _invoke("settings", "set", "agent_binary_path", "/opt/claude")

    assert "agent_binary_path=/opt/claude" in _invoke(
        "settings",
        "get",
        "agent_binary_path",
    ).output


def test_errors_become_click_failures(cli_env: Path) -> None:
    result = CliRunner().invoke(agent_supervisor, ["runs", "start", "missing-agent"])

    assert result.exit_code == 1
    assert "Agent definition not found: missing-agent" in result.output


def test_invalid_config_is_reported(cli_env: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENT_SUPERVISOR_COMMAND_TEMPLATE", "claude --no-prompt")

    result = CliRunner().invoke(agent_supervisor, ["agents", "list"])

    assert result.exit_code == 1
    assert "must include {prompt}" in result.output


def test_reconcile_with_nothing_to_do(cli_env: Path) -> None:
    result = _invoke("runs", "reconcile")

    assert "paused=0 completed=0 failed=0 still_alive=0" in result.output
