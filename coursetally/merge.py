from __future__ import annotations

from datetime import datetime
from typing import Iterable

from coursetally.models import NormalizedEvent, WeekView


def _in_week(event: NormalizedEvent, week_start: datetime, week_end: datetime) -> bool:
    return event.start_time is not None and week_start <= event.start_time <= week_end


def merge_week_events(
    remote: Iterable[NormalizedEvent],
    local: Iterable[NormalizedEvent],
    week_start: datetime,
    week_end: datetime,
) -> list[NormalizedEvent]:
    merged = [event for event in remote if not event.is_all_day and event.start_time is not None]
    merged.extend(
        event for event in local if not event.is_all_day and _in_week(event, week_start, week_end)
    )
    merged.sort(key=lambda event: event.start_time)
    return merged


def build_week_view(
    offset: int,
    week_start: datetime,
    week_end: datetime,
    remote: Iterable[NormalizedEvent],
    local: Iterable[NormalizedEvent],
) -> WeekView:
    local_events = list(local)
    return WeekView(
        offset=offset,
        week_start=week_start,
        week_end=week_end,
        events=merge_week_events(remote, local_events, week_start, week_end),
        unscheduled=[event for event in local_events if not event.is_scheduled],
    )
