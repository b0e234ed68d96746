from datetime import datetime, timedelta, timezone

import pytest

from rally_core.timer import (
    build_timer,
    is_expired,
    normalize_kind,
    parse_iso,
    parse_timer,
    remaining_seconds,
)

START = datetime(2026, 3, 1, 18, 30, tzinfo=timezone.utc)


def test_build_timer_computes_end_time():
    timer = build_timer("t-1", "team", START, 30, "A")
    assert timer.kind == "TIMEOUT_TEAM"
    assert timer.ends_at == START + timedelta(seconds=30)
    assert timer.to_record()["endsAt"] == "2026-03-01T18:30:30+00:00"


def test_remaining_seconds_rounds_up_and_clamps():
    timer = build_timer("t-1", "MEDICAL", START, 300)
    assert remaining_seconds(timer, START) == 300
    assert remaining_seconds(timer, START + timedelta(seconds=10.2)) == 290
    assert remaining_seconds(timer, START + timedelta(seconds=400)) == 0
    assert remaining_seconds(timer.to_record(), START + timedelta(seconds=299.5)) == 1
    assert remaining_seconds(None) == 0


def test_is_expired_at_end_time():
    timer = build_timer("t-1", "TIMEOUT_TECHNICAL", START, 30)
    assert not is_expired(timer, START + timedelta(seconds=29))
    assert is_expired(timer, START + timedelta(seconds=30))
    assert not is_expired(None)


def test_parse_timer_round_trips_record():
    timer = build_timer("t-2", "MEDICAL", START, 300, "B")
    assert parse_timer(timer.to_record()) == timer


def test_parse_timer_rejects_records_without_id():
    assert parse_timer({"type": "MEDICAL"}) is None
    assert parse_timer("t-1") is None


def test_parse_iso_treats_naive_values_as_utc():
    assert parse_iso("2026-03-01T18:30:00") == START
    assert parse_iso("not a date") is None
    assert parse_iso(None) is None


def test_normalize_kind_rejects_unknown_kinds():
    assert normalize_kind("medical") == "MEDICAL"
    with pytest.raises(ValueError):
        normalize_kind("halftime")
