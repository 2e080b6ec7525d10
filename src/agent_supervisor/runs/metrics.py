"""Derived run metrics replayed from persisted transcript lines."""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from agent_supervisor.runs.models import OutputLineView
from agent_supervisor.runs.pricing import lookup_pricing
from agent_supervisor.storage.common import from_iso


@dataclass(slots=True)
class RunMetrics:
    """Read-time metrics for one run; never stored."""

    duration_ms: int | None
    total_tokens: int | None
    input_tokens: int
    output_tokens: int
    cache_creation_tokens: int
    cache_read_tokens: int
    cost_usd: float | None
    message_count: int | None


class UsageAccumulator:
    """Token, cost, and timestamp totals over a stream of JSON-lines records."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.message_count = 0
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_creation_tokens = 0
        self.cache_read_tokens = 0
        self.reported_cost_usd = 0.0
        self.has_cost_field = False
        self.first_timestamp: datetime | None = None
        self.last_timestamp: datetime | None = None

    def add_line(self, content: str, *, received_at: datetime | None = None) -> None:
        try:
            record = json.loads(content)
        except ValueError:
            return
        if not isinstance(record, dict):
            return
        with self._lock:
            self.message_count += 1
            self._add_timestamp(_record_timestamp(record) or received_at)
            usage = record.get("usage")
            if not isinstance(usage, dict):
                message = record.get("message")
                usage = message.get("usage") if isinstance(message, dict) else None
            if isinstance(usage, dict):
                self.input_tokens += _int_field(usage, "input_tokens")
                self.output_tokens += _int_field(usage, "output_tokens")
                self.cache_creation_tokens += _int_field(usage, "cache_creation_input_tokens")
                self.cache_read_tokens += _int_field(usage, "cache_read_input_tokens")
            cost = record.get("cost", record.get("total_cost_usd"))
            if isinstance(cost, int | float) and not isinstance(cost, bool):
                self.reported_cost_usd += float(cost)
                self.has_cost_field = True

    def to_metrics(self, *, model: str) -> RunMetrics:
        with self._lock:
            total_tokens = self.input_tokens + self.output_tokens
            if self.has_cost_field:
                cost: float | None = self.reported_cost_usd
            elif total_tokens > 0:
                cost = lookup_pricing(model).cost_usd(
                    input_tokens=self.input_tokens,
                    output_tokens=self.output_tokens,
                    cache_creation_tokens=self.cache_creation_tokens,
                    cache_read_tokens=self.cache_read_tokens,
                )
            else:
                cost = None
            duration_ms = None
            if self.first_timestamp is not None and self.last_timestamp is not None:
                duration_ms = int(
                    (self.last_timestamp - self.first_timestamp).total_seconds() * 1000,
                )
            return RunMetrics(
                duration_ms=duration_ms,
                total_tokens=total_tokens or None,
                input_tokens=self.input_tokens,
                output_tokens=self.output_tokens,
                cache_creation_tokens=self.cache_creation_tokens,
                cache_read_tokens=self.cache_read_tokens,
                cost_usd=cost if cost else None,
                message_count=self.message_count or None,
            )

    def _add_timestamp(self, value: datetime | None) -> None:
        if value is None:
            return
        if self.first_timestamp is None or value < self.first_timestamp:
            self.first_timestamp = value
        if self.last_timestamp is None or value > self.last_timestamp:
            self.last_timestamp = value


def compute_run_metrics(lines: list[OutputLineView], *, model: str) -> RunMetrics:
    """Replay transcript lines through the pricing table.

    Record ``timestamp`` fields drive duration; lines without one fall back
    to their receipt time.
    """

    accumulator = UsageAccumulator()
    for line in lines:
        accumulator.add_line(line.content, received_at=line.received_at)
    return accumulator.to_metrics(model=model)


def render_metrics_lines(metrics: RunMetrics) -> list[str]:
    duration = f"{metrics.duration_ms / 1000:.1f}s" if metrics.duration_ms is not None else "-"
    cost = f"${metrics.cost_usd:.4f}" if metrics.cost_usd is not None else "-"
    return [
        f"  duration={duration} messages={metrics.message_count or 0}",
        (
            f"  tokens total={metrics.total_tokens or 0} input={metrics.input_tokens} "
            f"output={metrics.output_tokens} cache_write={metrics.cache_creation_tokens} "
            f"cache_read={metrics.cache_read_tokens}"
        ),
        f"  cost_usd={cost}",
    ]


def _record_timestamp(record: dict[str, Any]) -> datetime | None:
    value = record.get("timestamp")
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return from_iso(value).astimezone(UTC)
    except ValueError:
        return None


def _int_field(payload: dict[str, Any], key: str) -> int:
    value = payload.get(key)
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value
