from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Any, Iterable

from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from coursetally.models import (
    ORIGIN_REMOTE,
    UNTITLED_EVENT,
    NormalizedEvent,
    date_to_datetime,
    minutes_between,
    parse_iso_datetime,
)


logger = logging.getLogger(__name__)

RawEvent = dict[str, Any] | str | bytes | ICEvent


def decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return date_to_datetime(value)
    return None


def _is_date_only(value: Any) -> bool:
    return isinstance(value, date) and not isinstance(value, datetime)


def _parse_google_time(block: Any) -> tuple[datetime | None, bool]:
    """Return ``(instant, date_only)`` for a Google ``start``/``end`` block."""
    if not isinstance(block, dict):
        return None, False
    try:
        if block.get("dateTime"):
            return parse_iso_datetime(str(block["dateTime"])), False
        if block.get("date"):
            return date_to_datetime(date.fromisoformat(str(block["date"]).strip())), True
    except ValueError:
        return None, False
    return None, False


def _complete_bounds(
    start: datetime | None, end: datetime | None
) -> tuple[datetime, datetime] | None:
    if start is None and end is None:
        return None
    if start is None:
        start = end
    if end is None:
        end = start
    return start, end


def _build_event(
    *,
    event_id: str,
    title: str,
    description: str,
    location: str,
    start: datetime | None,
    end: datetime | None,
    is_all_day: bool,
    status: str,
) -> NormalizedEvent | None:
    bounds = _complete_bounds(start, end)
    if bounds is None:
        logger.warning("Rejected raw event %r: no parsable start or end", event_id)
        return None
    start, end = bounds
    return NormalizedEvent(
        id=event_id,
        source_event_id=event_id,
        title=title or UNTITLED_EVENT,
        description=description,
        location=location,
        start_time=start,
        end_time=end,
        duration_minutes=minutes_between(start, end),
        is_all_day=is_all_day,
        origin=ORIGIN_REMOTE,
        status=status or "confirmed",
    )


def normalize_google_event(raw: dict[str, Any]) -> NormalizedEvent | None:
    start, start_is_date = _parse_google_time(raw.get("start"))
    end, end_is_date = _parse_google_time(raw.get("end"))
    return _build_event(
        event_id=str(raw.get("id", "")).strip(),
        title=str(raw.get("summary", "") or "").strip(),
        description=str(raw.get("description", "") or ""),
        location=str(raw.get("location", "") or ""),
        start=start,
        end=end,
        is_all_day=start_is_date or end_is_date,
        status=str(raw.get("status", "") or "").strip(),
    )


def normalize_ical_event(raw: str | bytes | ICEvent) -> NormalizedEvent | None:
    if isinstance(raw, ICEvent):
        vevent = raw
    else:
        try:
            vevent = _first_vevent(ICalendar.from_ical(decode_raw_ical(raw)))
        except ValueError:
            logger.warning("Rejected raw event: unparsable iCalendar payload")
            return None
        if vevent is None:
            logger.warning("Rejected raw event: VEVENT missing in calendar resource")
            return None

    dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    start = _coerce_datetime(dtstart_raw)
    end = _coerce_datetime(dtend_raw)
    if end is None and start is not None and vevent.get("DURATION") is not None:
        end = start + vevent.decoded("DURATION")
    return _build_event(
        event_id=str(vevent.get("UID", "")).strip(),
        title=str(vevent.get("SUMMARY", "")).strip(),
        description=str(vevent.get("DESCRIPTION", "")).strip(),
        location=str(vevent.get("LOCATION", "")).strip(),
        start=start,
        end=end,
        is_all_day=_is_date_only(dtstart_raw) or _is_date_only(dtend_raw),
        status=str(vevent.get("STATUS", "")).strip().lower(),
    )


def normalize_event(raw: RawEvent) -> NormalizedEvent | None:
    if isinstance(raw, dict):
        return normalize_google_event(raw)
    return normalize_ical_event(raw)


def normalize_events(raws: Iterable[RawEvent]) -> list[NormalizedEvent]:
    events: list[NormalizedEvent] = []
    for raw in raws:
        event = normalize_event(raw)
        if event is not None:
            events.append(event)
    return events
