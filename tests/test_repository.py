from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from agent_supervisor.runs.errors import PersistenceError, RunNotFound
from agent_supervisor.runs.models import (
    AgentDefinition,
    AgentDefinitionCreate,
    AgentPermissions,
    AgentRunCreate,
    RunStatus,
)
from agent_supervisor.runs.repository import RunRepository

pytestmark = [
    allure.epic("Run Supervision"),
    allure.feature("Run Store"),
]


def _scheduled(
    repository: RunRepository,
    agent: AgentDefinition,
    *,
    start_at: datetime,
) -> str:
    return repository.create_run(
        AgentRunCreate(
            agent_id=agent.agent_id,
            agent_name=agent.name,
            task="Nightly cleanup",
            model="opus",
            project_path="/tmp",
            status=RunStatus.SCHEDULED,
            scheduled_start_time=start_at,
        ),
    ).run_id


def test_agent_definition_round_trips_permissions(repository: RunRepository) -> None:
    created = repository.add_agent(
        AgentDefinitionCreate(
            name="Reviewer",
            system_prompt="Review diffs.",
            permissions=AgentPermissions(
                sandbox_enabled=True,
                file_read=True,
                file_write=False,
                network=True,
            ),
        ),
    )

    loaded = repository.find_agent_by_id(created.agent_id)

    assert loaded is not None
    assert loaded.permissions == AgentPermissions(
        sandbox_enabled=True,
        file_read=True,
        file_write=False,
        network=True,
    )
    assert [definition.name for definition in repository.list_agents()] == ["Reviewer"]


def test_create_run_rejects_non_initial_status(
    repository: RunRepository,
    agent: AgentDefinition,
) -> None:
    with pytest.raises(ValueError, match="pending or scheduled"):
        repository.create_run(
            AgentRunCreate(
                agent_id=agent.agent_id,
                agent_name=agent.name,
                task="x",
                model="sonnet",
                project_path="/tmp",
                status=RunStatus.RUNNING,
            ),
        )


def test_due_scheduled_runs_are_ordered_and_filtered(
    repository: RunRepository,
    agent: AgentDefinition,
) -> None:
    now = datetime(2026, 11, 29, 12, 0, tzinfo=UTC)
    later = _scheduled(repository, agent, start_at=now + timedelta(hours=1))
    second = _scheduled(repository, agent, start_at=now - timedelta(minutes=5))
    first = _scheduled(repository, agent, start_at=now - timedelta(minutes=30))

    due = repository.list_due_scheduled(now=now)

    assert [run.run_id for run in due] == [first, second]
    assert later not in {run.run_id for run in due}
    assert len(repository.list_scheduled()) == 3


def test_concurrent_claims_succeed_exactly_once(
    repository: RunRepository,
    agent: AgentDefinition,
    tmp_path: Path,
) -> None:
    run_id = _scheduled(repository, agent, start_at=datetime.now(tz=UTC))
    barrier = threading.Barrier(8)
    results: list[bool] = []
    results_lock = threading.Lock()

    def _claim() -> None:
        competitor = RunRepository(tmp_path / "runs.db")
        try:
            barrier.wait(timeout=5)
            claimed = competitor.update_status(
                run_id,
                RunStatus.PENDING,
                expected_status=RunStatus.SCHEDULED,
            )
            with results_lock:
                results.append(claimed)
        finally:
            competitor.close()

    threads = [threading.Thread(target=_claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert sorted(results) == [False] * 7 + [True]
    assert repository.get_run(run_id).status == RunStatus.PENDING


def test_session_id_is_recorded_once(repository: RunRepository, agent: AgentDefinition) -> None:
    run_id = _scheduled(repository, agent, start_at=datetime.now(tz=UTC))

    assert repository.update_session_id(run_id, "sess-a") is True
    assert repository.update_session_id(run_id, "sess-b") is False

    assert repository.get_run(run_id).session_id == "sess-a"
    found = repository.find_run_by_session("sess-a")
    assert found is not None
    assert found.run_id == run_id


def test_output_lines_are_ordered_and_unique(
    repository: RunRepository,
    agent: AgentDefinition,
) -> None:
    run_id = _scheduled(repository, agent, start_at=datetime.now(tz=UTC))
    for number in (2, 1, 3):
        repository.append_output_line(run_id, number, f"line {number}")

    with pytest.raises(PersistenceError):
        repository.append_output_line(run_id, 2, "duplicate")

    assert [line.content for line in repository.get_output(run_id)] == [
        "line 1",
        "line 2",
        "line 3",
    ]
    assert [line.line_number for line in repository.get_output(run_id, after_line=1)] == [2, 3]
    assert repository.get_last_line_number(run_id) == 3
    assert repository.get_last_line_number("missing") == 0


def test_usage_limit_update_requires_existing_run(repository: RunRepository) -> None:
    with pytest.raises(RunNotFound):
        repository.update_usage_limit("missing", datetime.now(tz=UTC), True)


def test_settings_upsert(repository: RunRepository) -> None:
    assert repository.get_setting("agent_binary_path") is None

    repository.set_setting("agent_binary_path", "/usr/local/bin/claude")
    repository.set_setting("agent_binary_path", "/opt/claude")

    assert repository.get_setting("agent_binary_path") == "/opt/claude"


def test_unknown_stored_status_reads_as_pending() -> None:
    assert RunStatus.from_wire("exploded") == RunStatus.PENDING
    assert RunStatus.from_wire(None) == RunStatus.PENDING
    assert RunStatus.from_wire(" Running ") == RunStatus.RUNNING
