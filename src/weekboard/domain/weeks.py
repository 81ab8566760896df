from __future__ import annotations
from datetime import datetime, timedelta, timezone

from .value_types import WeekMs

WEEK_MS = 7 * 24 * 60 * 60 * 1000


def week_start_ms(now_ms: int) -> WeekMs:
    """Monday 00:00:00 UTC of the week containing `now_ms`."""
    d = datetime.fromtimestamp(now_ms / 1000, tz=timezone.utc)
    monday = (d - timedelta(days=d.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    return WeekMs(int(monday.timestamp()) * 1000)


def weeks_between(earlier_ms: int, later_ms: int) -> int:
    """Whole weeks from `earlier_ms` to `later_ms`; both must be week starts."""
    return (later_ms - earlier_ms) // WEEK_MS
