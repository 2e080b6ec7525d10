from __future__ import annotations

import shutil
from pathlib import Path

import allure
import pytest

from agent_supervisor.config import DEFAULT_COMMAND_TEMPLATE, DEFAULT_RESUME_COMMAND_TEMPLATE
from agent_supervisor.runs.command import build_run_args, command_preview
from agent_supervisor.runs.confinement import (
    CommandPrefixConfinement,
    UnconfinedBuilder,
    build_confinement,
    confine_or_fallback,
)
from agent_supervisor.runs.errors import ConfinementError, ProcessSpawnError
from agent_supervisor.runs.models import AgentPermissions
from agent_supervisor.runs.process import pid_is_running, spawn_process

pytestmark = [
    allure.epic("Run Supervision"),
    allure.feature("Command Construction"),
]

SANDBOXED = AgentPermissions(sandbox_enabled=True, file_read=True, file_write=False, network=True)


def test_default_template_keeps_prompt_as_single_argument() -> None:
    argv = build_run_args(
        command_template=DEFAULT_COMMAND_TEMPLATE,
        prompt="Fix 'quoted' bug; rm -rf /",
        system_prompt="Be careful",
        model="opus",
    )

    assert argv[:3] == ["claude", "-p", "Fix 'quoted' bug; rm -rf /"]
    assert argv[argv.index("--system-prompt") + 1] == "Be careful"
    assert argv[argv.index("--model") + 1] == "opus"
    assert "stream-json" in argv


def test_resume_template_passes_session() -> None:
    argv = build_run_args(
        command_template=DEFAULT_RESUME_COMMAND_TEMPLATE,
        prompt="continue",
        system_prompt="",
        model="sonnet",
        session_id="sess-1",
    )

    assert argv[argv.index("--resume") + 1] == "sess-1"


def test_binary_path_replaces_program() -> None:
    argv = build_run_args(
        command_template="claude -p {prompt}",
        prompt="x",
        system_prompt="",
        model="sonnet",
        binary_path=" /opt/bin/claude ",
    )

    assert argv == ["/opt/bin/claude", "-p", "x"]


@pytest.mark.parametrize("template", ["", "claude --model {model}", "claude {prompt} {nope}"])
def test_invalid_templates_are_permanent_spawn_errors(template: str) -> None:
    with pytest.raises(ProcessSpawnError) as error_info:
        build_run_args(command_template=template, prompt="x", system_prompt="", model="m")

    assert error_info.value.transient is False


def test_command_preview_truncates() -> None:
    preview = command_preview(["claude", "-p", "x" * 500], limit=40)

    assert len(preview) <= 40
    assert preview.startswith("claude -p")


def test_unconfined_builder_refuses_sandboxed_agents() -> None:
    with pytest.raises(ConfinementError):
        UnconfinedBuilder().wrap(["claude"], permissions=SANDBOXED, project_path=Path("/tmp"))


def test_prefix_confinement_renders_permission_flags() -> None:
    launcher = shutil.which("env")
    assert launcher is not None
    builder = CommandPrefixConfinement(
        "env SANDBOX_ROOT={project_path} READ={allow_read} WRITE={allow_write} NET={allow_network}",
    )

    argv = builder.wrap(["claude", "-p", "x"], permissions=SANDBOXED, project_path=Path("/work"))

    assert argv == [
        "env",
        "SANDBOX_ROOT=/work",
        "READ=1",
        "WRITE=0",
        "NET=1",
        "claude",
        "-p",
        "x",
    ]


def test_confinement_falls_back_when_launcher_is_missing() -> None:
    builder = build_confinement("no-such-sandbox-launcher-91 --root {project_path}")

    argv, confined = confine_or_fallback(
        builder,
        ["claude"],
        permissions=SANDBOXED,
        project_path=Path("/work"),
    )

    assert argv == ["claude"]
    assert confined is False


def test_unsandboxed_agents_are_never_wrapped() -> None:
    builder = build_confinement("env FOO=1")

    argv, confined = confine_or_fallback(
        builder,
        ["claude"],
        permissions=AgentPermissions(sandbox_enabled=False),
        project_path=Path("/work"),
    )

    assert (argv, confined) == (["claude"], False)


def test_spawn_rejects_missing_project_directory(tmp_path: Path) -> None:
    with pytest.raises(ProcessSpawnError, match="not a directory"):
        spawn_process(["true"], cwd=tmp_path / "missing")


def test_pid_is_running_handles_absent_pid() -> None:
    assert pid_is_running(None) is False
