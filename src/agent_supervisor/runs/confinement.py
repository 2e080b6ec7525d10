"""Confinement builder seam: wrap agent commands according to permission flags."""

from __future__ import annotations

import logging
import shlex
import shutil
from pathlib import Path
from typing import Protocol

from agent_supervisor.runs.errors import ConfinementError
from agent_supervisor.runs.models import AgentPermissions

logger = logging.getLogger(__name__)


class ConfinementBuilder(Protocol):
    """Protocol implemented by sandbox policy builders."""

    def wrap(
        self,
        argv: list[str],
        *,
        permissions: AgentPermissions,
        project_path: Path,
    ) -> list[str]:
        """Return a ready-to-exec command or raise ``ConfinementError``."""


class UnconfinedBuilder:
    """Runs commands as-is."""

    def wrap(
        self,
        argv: list[str],
        *,
        permissions: AgentPermissions,
        project_path: Path,
    ) -> list[str]:
        if permissions.sandbox_enabled:
            raise ConfinementError("No confinement backend configured.")
        return list(argv)


class CommandPrefixConfinement:
    """Prefix the agent command with a wrapper such as a sandbox launcher.

    The prefix is a command template that may reference ``{project_path}``,
    ``{allow_read}``, ``{allow_write}`` and ``{allow_network}`` (rendered as
    ``1``/``0``).
    """

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

    def wrap(
        self,
        argv: list[str],
        *,
        permissions: AgentPermissions,
        project_path: Path,
    ) -> list[str]:
        if not permissions.sandbox_enabled:
            return list(argv)
        try:
            rendered = self.prefix.format(
                project_path=shlex.quote(str(project_path)),
                allow_read="1" if permissions.file_read else "0",
                allow_write="1" if permissions.file_write else "0",
                allow_network="1" if permissions.network else "0",
            )
        except (KeyError, IndexError) as error:
            raise ConfinementError(f"Unsupported confinement placeholder: {error}") from error
        prefix_argv = shlex.split(rendered)
        if not prefix_argv:
            raise ConfinementError("Confinement prefix rendered empty command.")
        if shutil.which(prefix_argv[0]) is None:
            raise ConfinementError(f"Confinement launcher not found: {prefix_argv[0]}")
        return [*prefix_argv, *argv]


def build_confinement(prefix: str) -> ConfinementBuilder:
    if prefix.strip():
        return CommandPrefixConfinement(prefix.strip())
    return UnconfinedBuilder()


def confine_or_fallback(
    builder: ConfinementBuilder,
    argv: list[str],
    *,
    permissions: AgentPermissions,
    project_path: Path,
) -> tuple[list[str], bool]:
    """Wrap ``argv``; on ``ConfinementError`` fall back to unconfined execution.

    Returns the command and whether it is confined.
    """

    if not permissions.sandbox_enabled:
        return list(argv), False
    try:
        return builder.wrap(argv, permissions=permissions, project_path=project_path), True
    except ConfinementError as error:
        logger.warning("Confinement unavailable, running unconfined: %s", error)
        return list(argv), False
