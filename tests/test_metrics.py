from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta

import allure
import pytest

from agent_supervisor.runs.metrics import compute_run_metrics, render_metrics_lines
from agent_supervisor.runs.models import OutputLineView
from agent_supervisor.runs.pricing import OPUS_PRICING, SONNET_PRICING, lookup_pricing

pytestmark = [
    allure.epic("Run Supervision"),
    allure.feature("Run Metrics"),
]

START = datetime(2026, 11, 28, 9, 0, tzinfo=UTC)


def _lines(*records: object) -> list[OutputLineView]:
    return [
        OutputLineView(
            run_id="run-1",
            line_number=index,
            content=record if isinstance(record, str) else json.dumps(record),
            received_at=START + timedelta(seconds=index),
        )
        for index, record in enumerate(records, start=1)
    ]


def test_tokens_are_summed_from_top_level_and_message_usage() -> None:
    lines = _lines(
        {"type": "system", "timestamp": "2026-11-28T09:00:00Z"},
        {
            "type": "assistant",
            "message": {"usage": {"input_tokens": 1000, "output_tokens": 200}},
        },
        {
            "type": "result",
            "usage": {
                "input_tokens": 500,
                "output_tokens": 100,
                "cache_creation_input_tokens": 40,
                "cache_read_input_tokens": 60,
            },
            "timestamp": "2026-11-28T09:01:30Z",
        },
        "plain text is not a message",
    )

    metrics = compute_run_metrics(lines, model="claude-sonnet-4")

    assert metrics.input_tokens == 1500
    assert metrics.output_tokens == 300
    assert metrics.total_tokens == 1800
    assert metrics.cache_creation_tokens == 40
    assert metrics.cache_read_tokens == 60
    assert metrics.message_count == 3
    assert metrics.duration_ms == 90_000
    assert metrics.cost_usd == pytest.approx(
        SONNET_PRICING.cost_usd(
            input_tokens=1500,
            output_tokens=300,
            cache_creation_tokens=40,
            cache_read_tokens=60,
        ),
    )


def test_reported_cost_takes_precedence() -> None:
    lines = _lines(
        {"type": "assistant", "cost": 0.25, "usage": {"input_tokens": 10, "output_tokens": 5}},
        {"type": "result", "cost": 0.5},
    )

    metrics = compute_run_metrics(lines, model="opus")

    assert metrics.cost_usd == pytest.approx(0.75)


def test_empty_transcript_has_no_metrics() -> None:
    metrics = compute_run_metrics([], model="sonnet")

    assert metrics.total_tokens is None
    assert metrics.cost_usd is None
    assert metrics.message_count is None
    assert metrics.duration_ms is None
    assert "cost_usd=-" in render_metrics_lines(metrics)[-1]


def test_receipt_time_backs_missing_timestamps() -> None:
    lines = _lines({"type": "system"}, {"type": "assistant"}, {"type": "result"})

    metrics = compute_run_metrics(lines, model="sonnet")

    assert metrics.duration_ms == 2_000


@pytest.mark.parametrize(
    ("model", "expected"),
    [
        ("opus", OPUS_PRICING),
        ("claude-opus-4-1", OPUS_PRICING),
        ("sonnet", SONNET_PRICING),
        ("some-future-model", SONNET_PRICING),
    ],
)
def test_lookup_pricing_by_family(model: str, expected) -> None:
    assert lookup_pricing(model) == expected


def test_pricing_env_override(monkeypatch) -> None:
    monkeypatch.setenv("AGENT_SUPERVISOR_PRICING", "haiku:1:5,*:2:4:0:0,broken:entry")

    assert lookup_pricing("haiku").input_per_1m == 1.0
    assert lookup_pricing("anything").output_per_1m == 4.0


def test_cost_formula_per_million() -> None:
    cost = OPUS_PRICING.cost_usd(
        input_tokens=1_000_000,
        output_tokens=1_000_000,
        cache_creation_tokens=1_000_000,
        cache_read_tokens=1_000_000,
    )

    assert cost == pytest.approx(15.0 + 75.0 + 18.75 + 1.50)
