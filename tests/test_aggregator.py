from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from cc_overlay.aggregator import aggregate
from cc_overlay.models import CostBreakdown, TokenUsage, UsageRecord

pytestmark = pytest.mark.unit

TZ = timezone(timedelta(hours=2))
NOW = datetime(2026, 5, 10, 9, 0, tzinfo=TZ)


def _record(ts, session="s1", input_tokens=100, output_tokens=10, model="claude-sonnet-4"):
    return UsageRecord(session, model, input_tokens, output_tokens, 0, 0, ts)


def test_window_includes_exact_boundary_and_excludes_just_before():
    at_boundary = _record(NOW - timedelta(hours=5), input_tokens=1)
    just_outside = _record(NOW - timedelta(hours=5, microseconds=1), input_tokens=10)
    result = aggregate([at_boundary, just_outside], NOW, tz=TZ)
    assert result.window_usage.input_tokens == 1


def test_daily_window_uses_calendar_day_in_local_zone():
    into_today = _record(NOW.replace(hour=1), input_tokens=1)
    late_yesterday = _record(NOW.replace(hour=0) - timedelta(hours=1), input_tokens=10)
    result = aggregate([into_today, late_yesterday], NOW, tz=TZ)
    assert result.daily_usage.input_tokens == 1


def test_daily_window_follows_zone_not_utc():
    # 23:30 UTC on the 9th is 01:30 on the 10th in UTC+2.
    record = _record(datetime(2026, 5, 9, 23, 30, tzinfo=timezone.utc), input_tokens=7)
    assert aggregate([record], NOW, tz=TZ).daily_usage.input_tokens == 7
    assert aggregate([record], NOW, tz=timezone.utc).daily_usage.input_tokens == 0


def test_sessions_grouped_and_sorted_by_last_activity():
    records = [
        _record(NOW - timedelta(hours=30), session="old", model="claude-opus-4"),
        _record(NOW - timedelta(minutes=50), session="a", model="first-model"),
        _record(NOW - timedelta(minutes=10), session="a", model="later-model"),
        _record(NOW - timedelta(minutes=20), session="b"),
        _record(NOW - timedelta(minutes=40), session="a"),
    ]
    result = aggregate(records, NOW, tz=TZ)
    assert [s.session_id for s in result.sessions] == ["a", "b", "old"]
    session_a = result.sessions[0]
    assert session_a.message_count == 3
    assert session_a.model == "first-model"
    assert session_a.first_timestamp == NOW - timedelta(minutes=50)
    assert session_a.last_timestamp == NOW - timedelta(minutes=10)
    assert session_a.usage == TokenUsage(300, 30, 0, 0)
    assert result.current_session == session_a
    assert sum(s.message_count for s in result.sessions) == len(records)


def test_costs_only_cover_windowed_records():
    inside = _record(NOW - timedelta(hours=1), input_tokens=1_000_000, output_tokens=0)
    outside = _record(NOW - timedelta(days=3), input_tokens=5_000_000, output_tokens=0)
    result = aggregate([inside, outside], NOW, tz=TZ)
    assert result.window_cost.input_cost == pytest.approx(3.0)
    assert result.daily_cost.input_cost == pytest.approx(3.0)
    assert len(result.sessions) == 1
    assert result.sessions[0].message_count == 2


def test_empty_input():
    result = aggregate([], NOW, tz=TZ)
    assert result.current_session is None
    assert result.sessions == ()
    assert result.window_usage.total == 0
    assert result.daily_usage.total == 0
    assert result.window_cost == CostBreakdown.zero()
    assert result.daily_cost.total == 0.0


def test_aggregate_is_repeatable():
    records = [
        _record(NOW - timedelta(minutes=i * 7), session=f"s{i % 3}", input_tokens=i) for i in range(20)
    ]
    assert aggregate(records, NOW, tz=TZ) == aggregate(list(records), NOW, tz=TZ)
