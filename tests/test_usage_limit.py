from __future__ import annotations

import json
import threading
from datetime import UTC, datetime, timedelta

import allure
import pytest

from agent_supervisor.runs.usage_limit import (
    NOT_DETECTED,
    UsageLimitTracker,
    contains_limit_phrase,
    resolve_usage_limit,
)

pytestmark = [
    allure.epic("Run Supervision"),
    allure.feature("Usage Limit Detection"),
]

NOW = datetime(2026, 11, 28, 20, 0, tzinfo=UTC)
PROSE = "I've reached my usage limit. Try again at 6:00 PM PST on November 28."


def test_prose_with_explicit_zone_and_date_resolves_to_utc() -> None:
    resolution = resolve_usage_limit(PROSE, now=NOW)

    assert resolution.detected is True
    assert resolution.source == "text"
    assert resolution.reset_at == datetime(2026, 11, 29, 2, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    "text",
    [
        "I've reached my usage limit. Try again at 6:00 p.m. PST on November 28.",
        "I've reached my usage limit. Try again at 6 p.m. PST on Nov. 28.",
        "I've reached my usage limit. Try again at 6:00 P.M. PST on Nov. 28th.",
    ],
)
def test_dotted_abbreviations_keep_zone_and_date(text: str) -> None:
    resolution = resolve_usage_limit(text, now=NOW)

    assert resolution.detected is True
    assert resolution.reset_at == datetime(2026, 11, 29, 2, 0, tzinfo=UTC)


def test_resolution_is_idempotent_for_same_input_and_clock() -> None:
    first = resolve_usage_limit(PROSE, now=NOW)
    second = resolve_usage_limit(PROSE, now=NOW)

    assert first == second


def test_prose_inside_assistant_record_is_detected() -> None:
    line = json.dumps(
        {
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": PROSE}]},
        },
    )

    resolution = resolve_usage_limit(line, now=NOW)

    assert resolution.detected is True
    assert resolution.reset_at == datetime(2026, 11, 29, 2, 0, tzinfo=UTC)


def test_time_without_date_uses_next_occurrence() -> None:
    resolution = resolve_usage_limit(
        "Usage limit reached. Your limit resets at 3pm (UTC).",
        now=NOW,
    )

    assert resolution.reset_at == datetime(2026, 11, 29, 15, 0, tzinfo=UTC)


def test_time_without_zone_uses_assumed_offset() -> None:
    resolution = resolve_usage_limit(
        "You've reached your usage limit, try again at 10:30 pm on December 1",
        now=NOW,
        assumed_utc_offset_hours=2,
    )

    assert resolution.reset_at == datetime(2026, 12, 1, 20, 30, tzinfo=UTC)


def test_iana_zone_is_honoured() -> None:
    resolution = resolve_usage_limit(
        "Usage limit reached. Limit resets 9am (Europe/Berlin) on Dec 2",
        now=NOW,
    )

    assert resolution.reset_at == datetime(2026, 12, 2, 8, 0, tzinfo=UTC)


def test_date_far_in_the_past_rolls_to_next_year() -> None:
    late_december = datetime(2026, 12, 20, 12, 0, tzinfo=UTC)

    resolution = resolve_usage_limit(PROSE, now=late_december)

    assert resolution.reset_at == datetime(2027, 11, 29, 2, 0, tzinfo=UTC)


def test_date_a_few_days_past_stays_in_current_year() -> None:
    early_december = datetime(2026, 12, 1, 12, 0, tzinfo=UTC)

    resolution = resolve_usage_limit(PROSE, now=early_december)

    assert resolution.reset_at == datetime(2026, 11, 29, 2, 0, tzinfo=UTC)


def test_phrase_without_parseable_time_falls_back_to_now() -> None:
    resolution = resolve_usage_limit("Claude usage limit reached. Please wait.", now=NOW)

    assert resolution.detected is True
    assert resolution.source == "fallback"
    assert resolution.reset_at == NOW


def test_epoch_marker_is_structured() -> None:
    resolution = resolve_usage_limit("Claude AI usage limit reached|1795917600", now=NOW)

    assert resolution.source == "structured"
    assert resolution.reset_at == datetime.fromtimestamp(1795917600, tz=UTC)


def test_structured_reset_field_wins_over_prose() -> None:
    line = json.dumps(
        {
            "type": "error",
            "error": {
                "type": "usage_limit",
                "resets_at": "2026-11-30T08:00:00Z",
                "message": PROSE,
            },
        },
    )

    resolution = resolve_usage_limit(line, now=NOW)

    assert resolution.source == "structured"
    assert resolution.reset_at == datetime(2026, 11, 30, 8, 0, tzinfo=UTC)


@pytest.mark.parametrize(
    "line",
    [
        "",
        "plain progress output",
        '{"type": "assistant", "message": {"content": "rate limits are documented"}}',
        "not json {",
    ],
)
def test_ordinary_output_is_not_a_usage_limit(line: str) -> None:
    assert resolve_usage_limit(line, now=NOW) == NOT_DETECTED


def test_contains_limit_phrase_is_case_insensitive() -> None:
    assert contains_limit_phrase("USAGE LIMIT REACHED")
    assert not contains_limit_phrase("limit of usage")


def test_tracker_prefers_structured_over_later_fallback() -> None:
    tracker = UsageLimitTracker(clock=lambda: NOW)

    tracker.feed("Claude AI usage limit reached|1795917600")
    tracker.feed("usage limit reached")

    assert tracker.result.source == "structured"


def test_tracker_keeps_latest_among_equal_sources() -> None:
    tracker = UsageLimitTracker(clock=lambda: NOW)

    tracker.feed(PROSE)
    tracker.feed("Usage limit reached. Limit resets at 11pm UTC.")

    assert tracker.result.reset_at == NOW.replace(hour=23)


def test_tracker_accepts_concurrent_feeds() -> None:
    tracker = UsageLimitTracker(clock=lambda: NOW)
    barrier = threading.Barrier(4)

    def _feed(text: str) -> None:
        barrier.wait(timeout=5)
        for _ in range(50):
            tracker.feed(text)

    threads = [
        threading.Thread(target=_feed, args=(text,))
        for text in ("noise", PROSE, "more noise", "usage limit reached")
    ]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert tracker.result.source == "text"
    assert tracker.result.reset_at == NOW + timedelta(hours=6)
