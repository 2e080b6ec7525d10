"""Agent command rendering from configurable templates."""

from __future__ import annotations

import shlex

from agent_supervisor.runs.errors import ProcessSpawnError

AGENT_BINARY_SETTING = "agent_binary_path"


def build_run_args(  # noqa: PLR0913
    *,
    command_template: str,
    prompt: str,
    system_prompt: str,
    model: str,
    session_id: str = "",
    binary_path: str | None = None,
) -> list[str]:
    """Render a command template into argv.

    Supported placeholders: ``{prompt}``, ``{system_prompt}``, ``{model}``
    and ``{session_id}``. Values are shell-quoted before splitting, so
    prompts with spaces and quotes survive as single arguments. A
    configured ``binary_path`` replaces ``argv[0]``.
    """

    stripped = command_template.strip()
    if not stripped:
        raise ProcessSpawnError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped:
        raise ProcessSpawnError("Agent command template must include {prompt}.", transient=False)

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            system_prompt=shlex.quote(system_prompt),
            model=shlex.quote(model),
            session_id=shlex.quote(session_id),
        )
    except (KeyError, IndexError) as error:
        raise ProcessSpawnError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProcessSpawnError(
            "Agent command template rendered empty command.",
            transient=False,
        )
    if binary_path and binary_path.strip():
        argv[0] = binary_path.strip()
    return argv


def command_preview(argv: list[str], *, limit: int = 160) -> str:
    """Shell-joined argv trimmed for log lines."""

    joined = shlex.join(argv)
    if len(joined) <= limit:
        return joined
    return joined[: limit - 3] + "..."
