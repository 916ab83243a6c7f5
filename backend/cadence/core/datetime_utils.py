"""Datetime utilities for consistent timezone handling across the application."""

import calendar
from datetime import datetime, timedelta, timezone
from typing import Optional


def utc_now_naive() -> datetime:
    """Get current UTC time as naive datetime for database operations.

    Returns:
        Current datetime in UTC as naive datetime (no timezone info).

    Note:
        All persisted timestamps are TIMESTAMP WITHOUT TIME ZONE holding UTC.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def ensure_naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed to be UTC already."""
    if dt is None:
        return None
    if dt.tzinfo is not None:
        return dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def add_months(dt: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the end of shorter months.

    Jan 31 + 1 month is Feb 28 (or 29), not Mar 3.
    """
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def days_between(later: datetime, earlier: datetime) -> float:
    """Fractional days from `earlier` to `later` (negative when `later` is before)."""
    return (later - earlier) / timedelta(days=1)
