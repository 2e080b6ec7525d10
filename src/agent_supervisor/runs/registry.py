"""In-memory registry of live processes keyed by session."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field

from agent_supervisor.runs.errors import ProcessNotFound, RegistryConflict

logger = logging.getLogger(__name__)

_KILL_POLL_SECONDS = 0.05


@dataclass(slots=True)
class _LiveEntry:
    process: subprocess.Popen[str]
    run_id: str
    output: list[str] = field(default_factory=list)
    handle_taken: bool = False
    kill_requested: bool = False


class ProcessRegistry:
    """Single owner of live process handles.

    Every public method takes the lock once; signal delivery and the
    termination grace wait happen outside it. The registry keeps no run
    status, only liveness and the live output buffer.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entries: dict[str, _LiveEntry] = {}

    def register(self, session_key: str, process: subprocess.Popen[str], *, run_id: str) -> None:
        """Add a live process; raises ``RegistryConflict`` if the key holds a live one."""

        with self._lock:
            existing = self._entries.get(session_key)
            if existing is not None and existing.process.poll() is None:
                raise RegistryConflict(session_key)
            if existing is not None:
                logger.debug(
                    "Replacing exited registry entry session=%s run=%s",
                    session_key,
                    existing.run_id,
                )
            self._entries[session_key] = _LiveEntry(process=process, run_id=run_id)

    def unregister(self, session_key: str) -> None:
        with self._lock:
            self._entries.pop(session_key, None)

    def rekey(self, old_key: str, new_key: str) -> None:
        """Move an entry to the session handle the process reported."""

        if old_key == new_key:
            return
        with self._lock:
            entry = self._entries.get(old_key)
            if entry is None:
                raise ProcessNotFound(old_key)
            existing = self._entries.get(new_key)
            if existing is not None and existing.process.poll() is None:
                raise RegistryConflict(new_key)
            self._entries[new_key] = self._entries.pop(old_key)

    def is_alive(self, session_key: str) -> bool:
        with self._lock:
            entry = self._entries.get(session_key)
            return entry is not None and entry.process.poll() is None

    def contains(self, session_key: str) -> bool:
        with self._lock:
            return session_key in self._entries

    def key_for_run(self, run_id: str) -> str | None:
        with self._lock:
            for key, entry in self._entries.items():
                if entry.run_id == run_id:
                    return key
            return None

    def live_keys(self) -> list[str]:
        with self._lock:
            return [key for key, entry in self._entries.items() if entry.process.poll() is None]

    def pid(self, session_key: str) -> int:
        with self._lock:
            return self._require(session_key).process.pid

    def take_process(self, session_key: str) -> subprocess.Popen[str] | None:
        """Hand the process handle to the drainer; later calls return ``None``."""

        with self._lock:
            entry = self._entries.get(session_key)
            if entry is None or entry.handle_taken:
                return None
            entry.handle_taken = True
            return entry.process

    def append_output(self, session_key: str, line: str) -> None:
        with self._lock:
            entry = self._entries.get(session_key)
            if entry is not None:
                entry.output.append(line)

    def read_output(self, session_key: str) -> list[str]:
        with self._lock:
            return list(self._require(session_key).output)

    def kill_requested(self, session_key: str) -> bool:
        with self._lock:
            entry = self._entries.get(session_key)
            return entry is not None and entry.kill_requested

    def kill(self, session_key: str, *, grace_seconds: float = 5.0) -> bool:
        """Terminate, then force-kill after ``grace_seconds``.

        Returns ``True`` when the process had to be force-killed. The entry
        stays registered; the draining monitor unregisters it.
        """

        with self._lock:
            entry = self._require(session_key)
            entry.kill_requested = True
            process = entry.process

        if process.poll() is not None:
            return False
        try:
            process.terminate()
        except OSError:
            logger.debug("terminate() failed for pid=%s", process.pid, exc_info=True)
        deadline = time.monotonic() + max(0.0, grace_seconds)
        while time.monotonic() < deadline:
            if process.poll() is not None:
                return False
            time.sleep(_KILL_POLL_SECONDS)
        if process.poll() is not None:
            return False
        logger.warning(
            "Process pid=%s ignored termination for %.1fs; killing",
            process.pid,
            grace_seconds,
        )
        try:
            process.kill()
        except OSError:
            logger.debug("kill() failed for pid=%s", process.pid, exc_info=True)
        return True

    def _require(self, session_key: str) -> _LiveEntry:
        entry = self._entries.get(session_key)
        if entry is None:
            raise ProcessNotFound(session_key)
        return entry
