"""UTC date helpers shared by the lifecycle, entitlement and usage services.

All persisted timestamps are timezone-aware UTC. SQLite hands back naive
datetimes, so anything read from storage goes through ensure_utc().
"""

import calendar
from datetime import date, datetime, timezone
from typing import Any, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def normalize_now(now: Optional[Any] = None) -> datetime:
    if now is None:
        return utc_now()
    return ensure_utc(now)


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month addition, clamped to the last day of the target month.

    Jan 31 + 1 month -> Feb 28 (or 29).
    """
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calendar_days_between(later: datetime, earlier: datetime) -> int:
    """Number of calendar-day boundaries between two instants (UTC dates).

    A partial day counts as a whole one: 23:00 -> 01:00 next day is 1.
    """
    return (ensure_utc(later).date() - ensure_utc(earlier).date()).days


def month_start(value: datetime) -> date:
    """First day of the UTC month containing value."""
    value = ensure_utc(value)
    return date(value.year, value.month, 1)


def subtract_months(value: date, months: int) -> date:
    """First day of the month `months` before value's month."""
    month_index = value.month - 1 - months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    return date(year, month, 1)
