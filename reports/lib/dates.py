"""Calendar ranges for each reporting period.

Weeks run Sunday through Saturday. All "today" calculations happen in the
account timezone so a run shortly after midnight UTC does not skip a day.
"""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from reports.lib.constants import (
    DEFAULT_MONTH_RESET_DAY,
    DEFAULT_QUARTER_RESET_DAY,
    DEFAULT_TIMEZONE,
    DEFAULT_WEEK_RESET_WEEKDAY,
)
from reports.lib.models import DateRange, PeriodKind

__all__ = [
    "historical_ranges",
    "local_midnight",
    "local_today",
    "period_reset_date",
    "previous_period_range",
    "resolve_timezone",
]


def resolve_timezone(name: str) -> ZoneInfo:
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {name}") from exc


def local_today(tz: str = DEFAULT_TIMEZONE, now: Optional[datetime] = None) -> date:
    now = now or datetime.now(timezone.utc)
    return now.astimezone(resolve_timezone(tz)).date()


def _week_start(day: date) -> date:
    # Python weekday(): Monday=0 ... Sunday=6
    return day - timedelta(days=(day.weekday() + 1) % 7)


def _month_start(day: date) -> date:
    return day.replace(day=1)


def _quarter_start(day: date) -> date:
    return date(day.year, 3 * ((day.month - 1) // 3) + 1, 1)


def _shift_months(day: date, months: int) -> date:
    index = day.year * 12 + (day.month - 1) + months
    return date(index // 12, index % 12 + 1, 1)


def _period_start(period: PeriodKind, day: date) -> date:
    if period == PeriodKind.WEEK:
        return _week_start(day)
    if period == PeriodKind.MONTH:
        return _month_start(day)
    return _quarter_start(day)


def _previous_range(period: PeriodKind, current_start: date) -> DateRange:
    end = current_start - timedelta(days=1)
    if period == PeriodKind.WEEK:
        start = current_start - timedelta(days=7)
    elif period == PeriodKind.MONTH:
        start = _shift_months(current_start, -1)
    else:
        start = _shift_months(current_start, -3)
    return DateRange(start=start, end=end)


def previous_period_range(period: PeriodKind, *, today: date) -> DateRange:
    """The most recent fully completed period before ``today``.

    Example:
        >>> previous_period_range(PeriodKind.MONTH, today=date(2025, 3, 14))
        DateRange(start=datetime.date(2025, 2, 1), end=datetime.date(2025, 2, 28))
    """
    return _previous_range(period, _period_start(period, today))


def historical_ranges(period: PeriodKind, count: int, *, today: date) -> List[DateRange]:
    """``count`` completed periods before the latest one, newest first.

    The latest completed period is skipped because the regular run pulls it.
    """
    if count < 0:
        raise ValueError("count must be >= 0")
    ranges: List[DateRange] = []
    latest = previous_period_range(period, today=today)
    cursor = latest.start
    for _ in range(count):
        previous = _previous_range(period, cursor)
        ranges.append(previous)
        cursor = previous.start
    return ranges


def period_reset_date(
    period: PeriodKind,
    *,
    today: date,
    week_reset_weekday: int = DEFAULT_WEEK_RESET_WEEKDAY,
    month_reset_day: int = DEFAULT_MONTH_RESET_DAY,
    quarter_reset_day: int = DEFAULT_QUARTER_RESET_DAY,
) -> date:
    """The latest day on or before ``today`` that opened a new window for ``period``.

    A pull that finished before this day covered the previous window, so its
    status no longer counts as current.

    Example:
        >>> period_reset_date(PeriodKind.MONTH, today=date(2025, 3, 2))
        datetime.date(2025, 2, 3)
    """
    if period == PeriodKind.WEEK:
        return today - timedelta(days=(today.weekday() - week_reset_weekday) % 7)
    if period == PeriodKind.MONTH:
        candidate = today.replace(day=month_reset_day)
        if candidate > today:
            candidate = _shift_months(today, -1).replace(day=month_reset_day)
        return candidate
    candidate = _quarter_start(today).replace(day=quarter_reset_day)
    if candidate > today:
        candidate = _shift_months(_quarter_start(today), -3).replace(day=quarter_reset_day)
    return candidate


def local_midnight(day: date, tz: str = DEFAULT_TIMEZONE) -> datetime:
    """Start of ``day`` in ``tz``, as an aware UTC datetime."""
    return datetime.combine(day, time.min, tzinfo=resolve_timezone(tz)).astimezone(timezone.utc)
