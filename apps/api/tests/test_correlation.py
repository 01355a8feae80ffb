"""Tests for call id extraction, start-time matching, and durations."""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from app.services import correlation

TARGET = datetime(2025, 10, 10, 12, 0, tzinfo=timezone.utc)


def _call(call_id: str, started_at: datetime | None) -> dict:
    return {"id": call_id, "startedAt": started_at.isoformat().replace("+00:00", "Z") if started_at else None}


@pytest.mark.parametrize(
    "payload",
    [
        {"call": {"id": "call-42"}},
        {"callId": "call-42"},
        {"id": "call-42"},
        {"data": {"call": {"id": "call-42"}}},
    ],
)
def test_extract_call_id_from_each_payload_shape(payload):
    assert correlation.extract_call_id(payload) == "call-42"


def test_extract_call_id_prefers_nested_call_and_skips_blanks():
    payload = {"call": {"id": "  "}, "callId": "", "id": "evt-1", "data": {"call": {"id": "call-9"}}}

    assert correlation.extract_call_id(payload) == "evt-1"
    assert correlation.extract_call_id({"call": {"id": "call-1"}, "id": "evt-1"}) == "call-1"


def test_extract_call_id_handles_missing_and_non_mapping_payloads():
    assert correlation.extract_call_id(None) is None
    assert correlation.extract_call_id("call-1") is None
    assert correlation.extract_call_id({"call": "call-1", "data": {"callId": 7}}) is None
    assert correlation.extract_call_id({"data": {"callId": "call-7"}}) == "call-7"


def test_compute_duration_seconds():
    started = "2025-10-10T10:00:00Z"
    ended = "2025-10-10T10:03:15Z"

    assert correlation.compute_duration_seconds(started, ended) == 195
    assert correlation.compute_duration_seconds(None, ended) == 0
    assert correlation.compute_duration_seconds(started, None) == 0
    assert correlation.compute_duration_seconds(ended, started) == 0


def test_parse_timestamp_variants():
    aware = correlation.parse_timestamp("2025-10-10T12:00:00Z")
    naive = correlation.parse_timestamp(datetime(2025, 10, 10, 12, 0))
    millis = correlation.parse_timestamp(1760097600000)

    assert aware == TARGET
    assert naive == TARGET
    assert millis == TARGET
    assert correlation.parse_timestamp("not a date") is None
    assert correlation.parse_timestamp("") is None
    assert correlation.parse_timestamp(True) is None


def test_match_call_by_start_time_picks_closest_within_window():
    calls = [
        _call("far", TARGET - timedelta(seconds=200)),
        _call("near", TARGET - timedelta(seconds=90)),
        _call("unknown", None),
    ]

    match = correlation.match_call_by_start_time(calls, TARGET)

    assert match is not None
    assert match["id"] == "near"


def test_match_call_by_start_time_rejects_calls_outside_window():
    calls = [_call("old", TARGET - timedelta(seconds=400))]

    assert correlation.match_call_by_start_time(calls, TARGET) is None
    assert correlation.match_call_by_start_time([], TARGET) is None


def test_match_call_by_start_time_window_is_inclusive_and_uses_created_at():
    calls = [{"id": "edge", "createdAt": (TARGET + timedelta(seconds=180)).isoformat()}]

    match = correlation.match_call_by_start_time(calls, TARGET, timedelta(seconds=180))

    assert match is not None
    assert match["id"] == "edge"
