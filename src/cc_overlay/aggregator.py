from __future__ import annotations

from datetime import datetime, timedelta, tzinfo
from typing import Dict, Iterable, List, Optional

from .models import AggregatedUsage, Provider, SessionUsage, TokenUsage, UsageRecord
from .pricing import CostCalculator, calculator_for

WINDOW = timedelta(hours=5)


def aggregate(
    records: Iterable[UsageRecord],
    now: datetime,
    calculator: Optional[CostCalculator] = None,
    window: timedelta = WINDOW,
    tz: Optional[tzinfo] = None,
) -> AggregatedUsage:
    """Summarise ``records`` relative to ``now``.

    The rolling window is ``[now - window, now]`` and "today" is the calendar
    day of ``now`` in ``tz`` (the system zone when omitted). Sessions are built
    from every record, not only windowed ones. The result depends only on the
    arguments.
    """
    calculator = calculator or calculator_for(Provider.CLAUDE)
    records = list(records)
    cutoff = now - window
    today = _local_date(now, tz)

    window_records = [r for r in records if cutoff <= r.timestamp <= now]
    daily_records = [r for r in records if _local_date(r.timestamp, tz) == today]

    sessions = _group_sessions(records)
    return AggregatedUsage(
        current_session=sessions[0] if sessions else None,
        window_usage=_sum_usage(window_records),
        daily_usage=_sum_usage(daily_records),
        sessions=tuple(sessions),
        window_cost=calculator.total_cost(window_records),
        daily_cost=calculator.total_cost(daily_records),
    )


def _group_sessions(records: List[UsageRecord]) -> List[SessionUsage]:
    groups: Dict[str, List[UsageRecord]] = {}
    for record in records:
        groups.setdefault(record.session_id, []).append(record)

    sessions: List[SessionUsage] = []
    for session_id, group in groups.items():
        ordered = sorted(group, key=lambda r: r.timestamp)
        sessions.append(
            SessionUsage(
                session_id=session_id,
                model=ordered[0].model,
                usage=_sum_usage(group),
                message_count=len(group),
                first_timestamp=ordered[0].timestamp,
                last_timestamp=ordered[-1].timestamp,
            )
        )
    sessions.sort(key=lambda s: s.session_id)
    sessions.sort(key=lambda s: s.last_timestamp, reverse=True)
    return sessions


def _sum_usage(records: Iterable[UsageRecord]) -> TokenUsage:
    total = TokenUsage()
    for record in records:
        total = total + TokenUsage.from_record(record)
    return total


def _local_date(dt: datetime, tz: Optional[tzinfo]):
    return dt.astimezone(tz).date()


__all__ = ["WINDOW", "aggregate"]
