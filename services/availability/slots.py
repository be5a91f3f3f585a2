"""
services/availability/slots.py
Weekly slot generation for availability rules.
"""

from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Tuple

from config.settings import settings

ONE_WEEK = timedelta(days=7)


def rule_end_cap(
    first_start: datetime, end_date: date, max_span_days: Optional[int] = None
) -> datetime:
    """End of end_date (UTC), but never more than max_span_days after the first start."""
    if max_span_days is None:
        max_span_days = settings.MAX_RULE_SPAN_DAYS
    end_of_day = datetime.combine(end_date, time(23, 59, 59, 999000), tzinfo=timezone.utc)
    return min(end_of_day, first_start + timedelta(days=max_span_days))


def weekly_slot_times(
    first_start: datetime, duration_minutes: int, cap: datetime
) -> List[Tuple[datetime, datetime]]:
    """One (start, end) every 7 days from first_start while start <= cap."""
    duration = timedelta(minutes=duration_minutes)
    times = []
    start = first_start
    while start <= cap:
        times.append((start, start + duration))
        start += ONE_WEEK
    return times
