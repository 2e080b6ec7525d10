"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_supervisor.config import RunnerSettings
from agent_supervisor.runs.models import AgentDefinition, AgentDefinitionCreate
from agent_supervisor.runs.repository import RunRepository

_FAKE_AGENT = f"{sys.executable} -m agent_supervisor.runs.backend.fake_agent"


def fake_agent_template(scenario: str = "ok", *, extra: str = "") -> str:
    """Command template running the bundled fake agent in ``scenario``."""

    return (
        f"{_FAKE_AGENT} --scenario {scenario} --prompt {{prompt}} --model {{model}} {extra}"
    ).strip()


def fake_agent_resume_template(scenario: str = "ok", *, extra: str = "") -> str:
    return (
        f"{_FAKE_AGENT} --resume {{session_id}} --resume-scenario {scenario} "
        f"--prompt {{prompt}} --model {{model}} {extra}"
    ).strip()


@pytest.fixture()
def repository(tmp_path: Path) -> Iterator[RunRepository]:
    repo = RunRepository(tmp_path / "runs.db")
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def agent(repository: RunRepository) -> AgentDefinition:
    return repository.add_agent(
        AgentDefinitionCreate(
            name="Coder",
            icon="*",
            system_prompt="You are a careful coding agent.",
            default_task="Refactor the parser.",
        ),
    )


@pytest.fixture()
def runner_settings(tmp_path: Path) -> RunnerSettings:
    return RunnerSettings(
        command_template=fake_agent_template("ok", extra="--lines 2"),
        resume_command_template=fake_agent_resume_template("ok"),
        default_project_path=tmp_path,
        first_output_timeout_seconds=10.0,
        kill_grace_seconds=1.0,
    )
