"""Calendar windows used by the daily and retention tiers (all UTC)."""

import calendar
import math
from datetime import date, datetime, time, timedelta, timezone
from typing import Tuple, Union

from .models import Tier

Window = Tuple[datetime, datetime]

# Windows are closed on the last second of their final day.
_LAST_SECOND = timedelta(seconds=1)


def _as_date(value: Union[date, datetime]) -> date:
    if isinstance(value, datetime):
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc)
        return value.date()
    return value


def start_of_day(value: Union[date, datetime]) -> datetime:
    """Midnight UTC of the day containing ``value``."""
    return datetime.combine(_as_date(value), time.min, tzinfo=timezone.utc)


def day_window(value: Union[date, datetime]) -> Window:
    """``[00:00:00, 23:59:59]`` of the UTC day containing ``value``."""
    start = start_of_day(value)
    return start, start + timedelta(days=1) - _LAST_SECOND


def iso_week(value: Union[date, datetime]) -> Tuple[int, int]:
    """ISO ``(year, week)`` of a date; weeks start on Monday."""
    year, week, _ = _as_date(value).isocalendar()
    return year, week


def week_window(value: Union[date, datetime]) -> Window:
    """Monday 00:00:00 through Sunday 23:59:59 of the ISO week containing ``value``."""
    day = _as_date(value)
    monday = day - timedelta(days=day.weekday())
    start = start_of_day(monday)
    return start, start + timedelta(days=7) - _LAST_SECOND


def biweek_number(value: Union[date, datetime]) -> Tuple[int, int]:
    """``(iso_year, ceil(iso_week / 2))``: ISO weeks 1-2 are bi-week 1, 3-4 bi-week 2, ..."""
    year, week = iso_week(value)
    return year, math.ceil(week / 2)


def biweek_window(value: Union[date, datetime]) -> Window:
    """Fourteen-day window made of the paired ISO weeks ``(2n-1, 2n)``."""
    week_start, _ = week_window(value)
    _, week = iso_week(value)
    if week % 2 == 0:
        week_start -= timedelta(days=7)
    return week_start, week_start + timedelta(days=14) - _LAST_SECOND


def month_window(value: Union[date, datetime]) -> Window:
    """First day 00:00:00 through last day 23:59:59 of the calendar month."""
    day = _as_date(value)
    last_day = calendar.monthrange(day.year, day.month)[1]
    start = start_of_day(day.replace(day=1))
    return start, start_of_day(day.replace(day=last_day)) + timedelta(days=1) - _LAST_SECOND


_TIER_WINDOWS = {
    Tier.DAILY: day_window,
    Tier.WEEKLY: week_window,
    Tier.BIWEEKLY: biweek_window,
    Tier.MONTHLY: month_window,
}


def period_window(tier: Tier, value: Union[date, datetime]) -> Window:
    """Window of the given tier that contains ``value``."""
    return _TIER_WINDOWS[tier](value)


def period_key(tier: Tier, value: Union[date, datetime]) -> str:
    """Stable label of the tier period containing ``value`` (e.g. ``2025-W03``)."""
    if tier is Tier.DAILY:
        return _as_date(value).isoformat()
    if tier is Tier.WEEKLY:
        year, week = iso_week(value)
        return f"{year}-W{week:02d}"
    if tier is Tier.BIWEEKLY:
        year, biweek = biweek_number(value)
        return f"{year}-BW{biweek:02d}"
    day = _as_date(value)
    return f"{day.year}-{day.month:02d}"
