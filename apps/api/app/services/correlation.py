"""Call identity extraction, timestamp matching, and duration helpers."""
from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import datetime, timedelta, timezone
from typing import Any

DEFAULT_MATCH_WINDOW = timedelta(minutes=3)

Payload = Mapping[str, Any]
IdStrategy = Callable[[Payload], object]


def _path(*keys: str) -> IdStrategy:
    """Build a strategy that walks nested mappings along ``keys``."""

    def _lookup(payload: Payload) -> object:
        current: object = payload
        for key in keys:
            if not isinstance(current, Mapping):
                return None
            current = current.get(key)
        return current

    _lookup.__name__ = "path:" + ".".join(keys)
    return _lookup


# Vendor event shapes nest the call id differently; tried in order.
CALL_ID_STRATEGIES: tuple[IdStrategy, ...] = (
    _path("call", "id"),
    _path("callId"),
    _path("id"),
    _path("data", "call", "id"),
    _path("data", "callId"),
)


def extract_call_id(
    payload: object,
    strategies: Iterable[IdStrategy] = CALL_ID_STRATEGIES,
) -> str | None:
    """Return the first non-empty call id found by ``strategies``."""

    if not isinstance(payload, Mapping):
        return None
    for strategy in strategies:
        value = strategy(payload)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def ensure_tz(value: datetime) -> datetime:
    """Ensure the provided datetime is timezone-aware in UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: object) -> datetime | None:
    """Parse ISO-8601 strings, datetimes, or epoch milliseconds into UTC."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, datetime):
        return ensure_tz(value)
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            return ensure_tz(datetime.fromisoformat(text))
        except ValueError:
            return None
    return None


def compute_duration_seconds(started_at: object, ended_at: object) -> int:
    """Whole seconds between start and end; 0 when either is unknown."""

    start = parse_timestamp(started_at)
    end = parse_timestamp(ended_at)
    if start is None or end is None:
        return 0
    return max(0, int((end - start).total_seconds()))


def call_started_at(call: Payload) -> datetime | None:
    """Best known start time of a vendor call record."""

    return parse_timestamp(call.get("startedAt")) or parse_timestamp(call.get("createdAt"))


def match_call_by_start_time(
    calls: Iterable[Payload],
    target: datetime,
    window: timedelta = DEFAULT_MATCH_WINDOW,
) -> Payload | None:
    """Pick the call whose start is closest to ``target`` and within ``window``."""

    target = ensure_tz(target)
    best: Payload | None = None
    best_diff: timedelta | None = None
    for call in calls:
        started = call_started_at(call)
        if started is None:
            continue
        diff = abs(target - started)
        if best_diff is None or diff < best_diff:
            best, best_diff = call, diff

    if best is None or best_diff is None or best_diff > window:
        return None
    return best
