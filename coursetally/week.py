from __future__ import annotations

import math
from datetime import date, datetime, time, timedelta
from zoneinfo import ZoneInfo

from coursetally.models import ensure_tz


WEEK_SPAN = timedelta(days=7) - timedelta(milliseconds=1)


def week_range(offset: int, now: datetime, tz: str = "UTC") -> tuple[datetime, datetime]:
    """Sunday 00:00 through Saturday 23:59:59.999 in ``tz``, ``offset`` weeks from ``now``."""
    zone = ZoneInfo(tz)
    local_now = ensure_tz(now).astimezone(zone)
    days_since_sunday = (local_now.weekday() + 1) % 7
    sunday = local_now.date() - timedelta(days=days_since_sunday) + timedelta(days=int(offset) * 7)
    start = datetime.combine(sunday, time.min, tzinfo=zone)
    return start, start + WEEK_SPAN


def _sunday_based_weekday(value: date) -> int:
    return (value.weekday() + 1) % 7


def week_id(week_start: datetime | date) -> str:
    day = week_start.date() if isinstance(week_start, datetime) else week_start
    jan_first = date(day.year, 1, 1)
    day_of_year = (day - jan_first).days
    number = math.ceil((day_of_year + _sunday_based_weekday(jan_first) + 1) / 7)
    return f"{day.year}-{number:02d}"


def week_label(offset: int) -> str:
    if offset == 0:
        return "This Week"
    if offset == -1:
        return "Last Week"
    if offset == 1:
        return "Next Week"
    return f"Week {offset:+d}"


def slot_start(week_start: datetime, day: int, hour: int) -> datetime:
    if not 0 <= day <= 6:
        raise ValueError(f"day must be within 0..6, got {day}")
    if not 0 <= hour <= 23:
        raise ValueError(f"hour must be within 0..23, got {hour}")
    return week_start + timedelta(days=day, hours=hour)
