"""Best-effort lifecycle notifications keyed by run id."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)

RUN_OUTPUT = "run-output"
RUN_ERROR = "run-error"
RUN_COMPLETE = "run-complete"

Listener = Callable[[str, str, dict[str, Any]], None]


class NotificationSink(Protocol):
    """Protocol for consumers of run lifecycle events."""

    def emit(self, event: str, run_id: str, payload: dict[str, Any]) -> None:
        """Deliver one event; must not raise."""


class NotificationHub:
    """Fans events out to subscribed listeners; no listeners is fine."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener and return its unsubscribe callable."""

        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def emit(self, event: str, run_id: str, payload: dict[str, Any]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event, run_id, payload)
            except Exception:
                logger.exception("Notification listener failed event=%s run=%s", event, run_id)
