from __future__ import annotations

import json
import subprocess
import sys
from pathlib import Path

import allure

from agent_supervisor.runs.errors import PersistenceError
from agent_supervisor.runs.models import AgentDefinition, AgentRunCreate, RunStatus
from agent_supervisor.runs.notifications import RUN_ERROR, RUN_OUTPUT, NotificationHub
from agent_supervisor.runs.registry import ProcessRegistry
from agent_supervisor.runs.repository import RunRepository
from agent_supervisor.runs.stream import OutputStreamProcessor, extract_session_id

pytestmark = [
    allure.epic("Run Supervision"),
    allure.feature("Output Stream Processing"),
]


class _FlakyRepository(RunRepository):
    """Fails the n-th transcript write once."""

    def __init__(self, db_path: Path, *, fail_on_call: int) -> None:
        super().__init__(db_path)
        self.fail_on_call = fail_on_call
        self.calls = 0

    def append_output_line(self, run_id, line_number, content, *, received_at=None) -> None:
        self.calls += 1
        if self.calls == self.fail_on_call:
            raise PersistenceError("disk full")
        super().append_output_line(run_id, line_number, content, received_at=received_at)


def _run_row(repository: RunRepository, agent: AgentDefinition) -> str:
    return repository.create_run(
        AgentRunCreate(
            agent_id=agent.agent_id,
            agent_name=agent.name,
            task="Stream",
            model="sonnet",
            project_path="/tmp",
            status=RunStatus.PENDING,
        ),
    ).run_id


def _spawn_fake(*args: str) -> subprocess.Popen[str]:
    return subprocess.Popen(  # noqa: S603
        [sys.executable, "-m", "agent_supervisor.runs.backend.fake_agent", *args],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        bufsize=1,
    )


def _drain(
    repository: RunRepository,
    run_id: str,
    process: subprocess.Popen[str],
    *,
    first_line_number: int = 1,
    hub: NotificationHub | None = None,
):
    registry = ProcessRegistry()
    registry.register(run_id, process, run_id=run_id)
    processor = OutputStreamProcessor(
        repository=repository,
        registry=registry,
        notifications=hub or NotificationHub(),
        model="sonnet",
    )
    outcome = processor.process(
        process,
        run_id=run_id,
        session_key=run_id,
        first_line_number=first_line_number,
    )
    return outcome, registry


def test_lines_are_numbered_without_gaps_and_session_is_captured(
    repository: RunRepository,
    agent: AgentDefinition,
) -> None:
    run_id = _run_row(repository, agent)
    events: list[tuple[str, dict]] = []
    hub = NotificationHub()
    hub.subscribe(lambda event, _run, payload: events.append((event, payload)))

    outcome, registry = _drain(
        repository,
        run_id,
        _spawn_fake("--scenario", "ok", "--lines", "4", "--session-id", "sess-42"),
        hub=hub,
    )

    lines = repository.get_output(run_id)
    assert [line.line_number for line in lines] == list(range(1, 7))
    assert outcome.exit_code == 0
    assert outcome.exit_succeeded is True
    assert outcome.lines_persisted == 6
    assert outcome.session_id == "sess-42"
    assert outcome.session_key == "sess-42"
    assert repository.get_run(run_id).session_id == "sess-42"
    assert registry.key_for_run(run_id) == "sess-42"
    assert len(registry.read_output("sess-42")) == 6
    assert [payload["line_number"] for event, payload in events if event == RUN_OUTPUT] == list(
        range(1, 7),
    )
    assert outcome.metrics.input_tokens == 400
    assert outcome.metrics.message_count == 6


def test_continuation_numbering_starts_after_watermark(
    repository: RunRepository,
    agent: AgentDefinition,
) -> None:
    run_id = _run_row(repository, agent)

    _drain(
        repository,
        run_id,
        _spawn_fake("--scenario", "ok", "--lines", "1"),
        first_line_number=8,
    )

    assert [line.line_number for line in repository.get_output(run_id)] == [8, 9, 10]


def test_failed_write_skips_line_without_consuming_number(
    repository: RunRepository,
    agent: AgentDefinition,
    tmp_path: Path,
) -> None:
    run_id = _run_row(repository, agent)
    flaky = _FlakyRepository(tmp_path / "runs.db", fail_on_call=2)
    try:
        outcome, _ = _drain(flaky, run_id, _spawn_fake("--scenario", "ok", "--lines", "3"))
    finally:
        flaky.close()

    numbers = [line.line_number for line in repository.get_output(run_id)]
    assert numbers == [1, 2, 3, 4]
    assert outcome.lines_persisted == 4
    assert outcome.lines_skipped == 1


def test_stderr_feeds_usage_detection_but_is_not_persisted(
    repository: RunRepository,
    agent: AgentDefinition,
) -> None:
    run_id = _run_row(repository, agent)
    events: list[str] = []
    hub = NotificationHub()
    hub.subscribe(lambda event, _run, _payload: events.append(event))

    outcome, _ = _drain(
        repository,
        run_id,
        _spawn_fake("--scenario", "stderr-limit"),
        hub=hub,
    )

    assert repository.get_output(run_id) == []
    assert outcome.exit_code == 1
    assert outcome.usage_limit_detected is True
    assert outcome.resolved_reset_time is not None
    assert "usage limit" in outcome.stderr_tail
    assert events == [RUN_ERROR]


def test_listener_failure_does_not_break_processing(
    repository: RunRepository,
    agent: AgentDefinition,
) -> None:
    run_id = _run_row(repository, agent)
    hub = NotificationHub()

    def _explode(*_args) -> None:
        raise RuntimeError("listener bug")

    hub.subscribe(_explode)

    outcome, _ = _drain(repository, run_id, _spawn_fake("--scenario", "ok"), hub=hub)

    assert outcome.lines_persisted == 3


def test_extract_session_id_variants() -> None:
    assert extract_session_id(json.dumps({"session_id": " abc "})) == "abc"
    assert extract_session_id(json.dumps({"sessionId": "xyz"})) == "xyz"
    assert extract_session_id(json.dumps({"session_id": ""})) is None
    assert extract_session_id("session_id=abc") is None
    assert extract_session_id("[1, 2]") is None
