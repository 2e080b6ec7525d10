"""Usage-limit detection and reset-time resolution for agent output.

Agents report an exhausted usage allowance either as a structured record
(a reset timestamp field or the ``usage limit reached|<epoch>`` marker) or
as prose such as ``I've reached my usage limit. Try again at 6:00 PM PST on
November 28.``. Resolution is best effort: when the phrase is present but
no time can be read, the reset time falls back to ``now`` so the run is
still paused instead of failed.
"""

from __future__ import annotations

import json
import logging
import re
import threading
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from agent_supervisor.storage.common import from_iso, utc_now

logger = logging.getLogger(__name__)

USAGE_LIMIT_PHRASES: tuple[str, ...] = (
    "i've reached my usage limit",
    "i’ve reached my usage limit",
    "you've reached your usage limit",
    "usage limit reached",
    "usage limit exceeded",
)
_RESET_FIELDS: tuple[str, ...] = ("resets_at", "reset_at", "resetsAt", "usage_limit_reset_time")
_LIMIT_TYPE_MARKERS: tuple[str, ...] = ("usage_limit", "rate_limit_exceeded")
_TEXT_FIELDS: tuple[str, ...] = ("error", "messageText", "result", "text")

_EPOCH_MARKER = re.compile(r"usage limit reached\|(\d{9,13})", re.IGNORECASE)
_RESET_CLAUSE = re.compile(
    r"(?:again at|resets? at|resets? on|resets)\s+(?P<clause>.+?)(?:[.!?](?=\s|$)|$|\n)",
    re.IGNORECASE,
)
_TIME_OF_DAY = re.compile(
    r"^\s*(?P<hour>\d{1,2})(?::(?P<minute>\d{2}))?\s*"
    r"(?P<meridiem>[ap]\.?m\.?)?\s*"
    r"(?:\(?(?P<zone>[A-Za-z]+(?:/[A-Za-z_]+)+|[A-Za-z]{1,5})\)?)?\s*$",
    re.IGNORECASE,
)
_MONTH_DAY = re.compile(
    r"^\s*(?P<month>[A-Za-z]+)\.?\s+(?P<day>\d{1,2})(?:st|nd|rd|th)?"
    r"(?:,?\s+(?P<year>\d{4}))?\s*$",
    re.IGNORECASE,
)
_ON_SPLIT = re.compile(r"\s+on\s+", re.IGNORECASE)
# Abbreviation dots are dropped before clause extraction: "6 p.m. PST", "Nov. 28".
_DOTTED_MERIDIEM = re.compile(r"(?<=\d)(\s*)([ap])\.m\.?", re.IGNORECASE)
_DOTTED_MONTH = re.compile(
    r"\b(jan|feb|mar|apr|jun|jul|aug|sept?|oct|nov|dec)\.(?=\s*\d)",
    re.IGNORECASE,
)

_MONTHS: dict[str, int] = {
    name: index
    for index, names in enumerate(
        (
            ("january", "jan"),
            ("february", "feb"),
            ("march", "mar"),
            ("april", "apr"),
            ("may",),
            ("june", "jun"),
            ("july", "jul"),
            ("august", "aug"),
            ("september", "sep", "sept"),
            ("october", "oct"),
            ("november", "nov"),
            ("december", "dec"),
        ),
        start=1,
    )
    for name in names
}
_ZONE_OFFSETS_HOURS: dict[str, float] = {
    "PST": -8,
    "PDT": -7,
    "MST": -7,
    "MDT": -6,
    "CST": -6,
    "CDT": -5,
    "EST": -5,
    "EDT": -4,
    "UTC": 0,
    "GMT": 0,
    "Z": 0,
}
_PAST_ROLLOVER = timedelta(days=7)


@dataclass(slots=True, frozen=True)
class UsageLimitResolution:
    """Outcome of scanning text for the usage-limit condition."""

    detected: bool
    reset_at: datetime | None
    source: str

    @property
    def rank(self) -> int:
        return _SOURCE_RANK[self.source]


_SOURCE_RANK = {"none": 0, "fallback": 1, "text": 2, "structured": 3}
NOT_DETECTED = UsageLimitResolution(detected=False, reset_at=None, source="none")


def resolve_usage_limit(
    text: str,
    *,
    now: datetime | None = None,
    assumed_utc_offset_hours: float = -8.0,
) -> UsageLimitResolution:
    """Classify one output line or text blob; never raises."""

    current = now or utc_now()
    stripped = text.strip()
    if not stripped:
        return NOT_DETECTED

    record = _parse_record(stripped)
    if record is not None:
        structured = _resolve_structured(record)
        if structured is not None:
            return structured
        candidates = _candidate_texts(record)
    else:
        candidates = [stripped]

    detected = False
    for candidate in candidates:
        marker = _resolve_epoch_marker(candidate)
        if marker is not None:
            return marker
        if not contains_limit_phrase(candidate):
            continue
        detected = True
        reset_at = _parse_reset_clause(
            candidate,
            now=current,
            assumed_utc_offset_hours=assumed_utc_offset_hours,
        )
        if reset_at is not None:
            return UsageLimitResolution(detected=True, reset_at=reset_at, source="text")

    if detected:
        return UsageLimitResolution(detected=True, reset_at=current, source="fallback")
    return NOT_DETECTED


def contains_limit_phrase(text: str) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in USAGE_LIMIT_PHRASES)


class UsageLimitTracker:
    """Accumulates per-line resolutions from concurrent readers.

    Keeps the most authoritative result (structured over parsed text over
    fallback); among equals the most recent report wins.
    """

    def __init__(
        self,
        *,
        assumed_utc_offset_hours: float = -8.0,
        clock=utc_now,
    ) -> None:
        self._assumed_utc_offset_hours = assumed_utc_offset_hours
        self._clock = clock
        self._lock = threading.Lock()
        self._best = NOT_DETECTED

    def feed(self, text: str) -> UsageLimitResolution:
        resolution = resolve_usage_limit(
            text,
            now=self._clock(),
            assumed_utc_offset_hours=self._assumed_utc_offset_hours,
        )
        if resolution.detected:
            with self._lock:
                if resolution.rank >= self._best.rank:
                    self._best = resolution
        return resolution

    @property
    def result(self) -> UsageLimitResolution:
        with self._lock:
            return self._best


def _parse_record(text: str) -> dict[str, Any] | None:
    if not text.startswith("{"):
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        return None
    return parsed if isinstance(parsed, dict) else None


def _candidate_texts(record: dict[str, Any]) -> list[str]:
    texts: list[str] = []
    for key in _TEXT_FIELDS:
        value = record.get(key)
        if isinstance(value, str) and value:
            texts.append(value)
        elif isinstance(value, dict):
            nested = value.get("message")
            if isinstance(nested, str) and nested:
                texts.append(nested)
    message = record.get("message")
    if isinstance(message, str) and message:
        texts.append(message)
    elif isinstance(message, dict):
        content = message.get("content")
        if isinstance(content, str) and content:
            texts.append(content)
        elif isinstance(content, list):
            for block in content:
                if isinstance(block, dict) and isinstance(block.get("text"), str):
                    texts.append(block["text"])
    return texts


def _resolve_structured(record: dict[str, Any]) -> UsageLimitResolution | None:
    containers = [record]
    for key in ("error", "usage_limit", "rate_limit"):
        nested = record.get(key)
        if isinstance(nested, dict):
            containers.append(nested)

    if not _has_structured_signal(record, containers):
        return None
    for container in containers:
        for field_name in _RESET_FIELDS:
            reset_at = _coerce_timestamp(container.get(field_name))
            if reset_at is not None:
                return UsageLimitResolution(detected=True, reset_at=reset_at, source="structured")
    return None


def _has_structured_signal(record: dict[str, Any], containers: list[dict[str, Any]]) -> bool:
    for container in containers:
        for key in ("type", "subtype", "code", "error_type"):
            value = container.get(key)
            if isinstance(value, str) and any(
                marker in value.lower() for marker in _LIMIT_TYPE_MARKERS
            ):
                return True
    return any(contains_limit_phrase(candidate) for candidate in _candidate_texts(record))


def _coerce_timestamp(value: object) -> datetime | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int | float):
        return _from_epoch(float(value))
    if isinstance(value, str) and value.strip():
        raw = value.strip()
        if raw.isdigit():
            return _from_epoch(float(raw))
        try:
            return from_iso(raw).astimezone(UTC)
        except ValueError:
            logger.debug("Unparseable reset timestamp %r", raw)
    return None


def _from_epoch(value: float) -> datetime | None:
    seconds = value / 1000.0 if value > 1e12 else value
    try:
        return datetime.fromtimestamp(seconds, tz=UTC)
    except (OverflowError, OSError, ValueError):
        logger.debug("Out of range reset epoch %r", value)
        return None


def _resolve_epoch_marker(text: str) -> UsageLimitResolution | None:
    match = _EPOCH_MARKER.search(text)
    if match is None:
        return None
    reset_at = _from_epoch(float(match.group(1)))
    if reset_at is None:
        return None
    return UsageLimitResolution(detected=True, reset_at=reset_at, source="structured")


def _parse_reset_clause(
    text: str,
    *,
    now: datetime,
    assumed_utc_offset_hours: float,
) -> datetime | None:
    text = _DOTTED_MONTH.sub(r"\1", _DOTTED_MERIDIEM.sub(r"\1\2m", text))
    lowered = text.lower()
    phrase_at = min(
        (lowered.find(phrase) for phrase in USAGE_LIMIT_PHRASES if phrase in lowered),
        default=0,
    )
    match = _RESET_CLAUSE.search(text, phrase_at)
    if match is None:
        return None
    clause = match.group("clause").strip()
    parts = _ON_SPLIT.split(clause, maxsplit=1)
    time_part = parts[0]
    date_part = parts[1] if len(parts) > 1 else None

    time_match = _TIME_OF_DAY.match(time_part)
    if time_match is None:
        return None
    hour = int(time_match.group("hour"))
    minute = int(time_match.group("minute") or 0)
    meridiem = (time_match.group("meridiem") or "").lower().replace(".", "")
    if meridiem:
        if not 1 <= hour <= 12:
            return None
        hour = hour % 12 + (12 if meridiem == "pm" else 0)
    if hour > 23 or minute > 59:
        return None

    zone = _resolve_zone(time_match.group("zone"), assumed_utc_offset_hours)
    local_now = now.astimezone(zone)

    if date_part is None:
        candidate = datetime.combine(
            local_now.date(),
            datetime.min.time(),
            tzinfo=zone,
        ).replace(hour=hour, minute=minute)
        if candidate <= local_now:
            candidate += timedelta(days=1)
        return candidate.astimezone(UTC)

    parsed = _parse_month_day(date_part)
    if parsed is None:
        return None
    month, day_of_month, explicit_year = parsed
    year = explicit_year or local_now.year
    reset_day = _safe_date(year, month, day_of_month)
    if reset_day is None:
        return None
    candidate = datetime.combine(reset_day, datetime.min.time(), tzinfo=zone).replace(
        hour=hour,
        minute=minute,
    )
    if explicit_year is None and candidate < local_now - _PAST_ROLLOVER:
        next_year_day = _safe_date(year + 1, month, day_of_month)
        if next_year_day is not None:
            candidate = candidate.replace(year=next_year_day.year)
    return candidate.astimezone(UTC)


def _parse_month_day(text: str) -> tuple[int, int, int | None] | None:
    match = _MONTH_DAY.match(text)
    if match is None:
        return None
    month = _MONTHS.get(match.group("month").lower())
    if month is None:
        return None
    year = int(match.group("year")) if match.group("year") else None
    return month, int(match.group("day")), year


def _safe_date(year: int, month: int, day: int) -> date | None:
    try:
        return date(year, month, day)
    except ValueError:
        return None


def _resolve_zone(abbreviation: str | None, assumed_utc_offset_hours: float) -> tzinfo:
    assumed = timezone(timedelta(hours=assumed_utc_offset_hours))
    if not abbreviation:
        return assumed
    offset = _ZONE_OFFSETS_HOURS.get(abbreviation.upper())
    if offset is not None:
        return timezone(timedelta(hours=offset))
    if "/" in abbreviation:
        try:
            return ZoneInfo(abbreviation)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("Unknown IANA zone %r, using assumed offset", abbreviation)
    return assumed
