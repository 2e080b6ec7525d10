"""OS process helpers: spawn, terminate, and pid liveness."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import time
from pathlib import Path

from agent_supervisor.runs.errors import ProcessSpawnError

logger = logging.getLogger(__name__)


def spawn_process(
    argv: list[str],
    *,
    cwd: Path,
    env: dict[str, str] | None = None,
) -> subprocess.Popen[str]:
    """Start the agent process with piped, line-buffered text output and no stdin."""

    if not argv:
        raise ProcessSpawnError("Agent command rendered empty argv.", transient=False)
    if not cwd.is_dir():
        raise ProcessSpawnError(f"Project path is not a directory: {cwd}", transient=False)
    try:
        return subprocess.Popen(  # noqa: S603
            argv,
            cwd=cwd,
            env=env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            encoding="utf-8",
            errors="replace",
            bufsize=1,
        )
    except FileNotFoundError as error:
        raise ProcessSpawnError(
            f"Agent command not found: {argv[0]}",
            transient=False,
        ) from error
    except OSError as error:
        raise ProcessSpawnError(
            f"Agent command failed to start: {error}",
            transient=True,
        ) from error


def terminate_process(process: subprocess.Popen[str], *, grace_seconds: float = 2.0) -> None:
    """Ask the process to stop, then kill it if it is still alive after the grace period."""

    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=grace_seconds)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=grace_seconds)


def pid_is_running(pid: int | None) -> bool:
    """Best-effort OS liveness probe for a recorded pid."""

    if pid is None or pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    except OSError:
        return False
    return True


def kill_pid(pid: int, *, grace_seconds: float = 5.0) -> bool:
    """Terminate a process known only by pid; ``True`` if it is gone afterwards."""

    if not pid_is_running(pid):
        return True
    try:
        os.kill(pid, signal.SIGTERM)
    except ProcessLookupError:
        return True
    except OSError:
        logger.warning("Cannot signal pid=%s", pid, exc_info=True)
        return False
    deadline = time.monotonic() + max(0.0, grace_seconds)
    while time.monotonic() < deadline:
        if not pid_is_running(pid):
            return True
        time.sleep(0.1)
    kill_signal = getattr(signal, "SIGKILL", signal.SIGTERM)
    try:
        os.kill(pid, kill_signal)
    except ProcessLookupError:
        return True
    except OSError:
        logger.warning("Cannot kill pid=%s", pid, exc_info=True)
        return False
    return not pid_is_running(pid)
