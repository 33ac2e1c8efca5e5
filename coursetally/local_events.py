from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from coursetally.errors import ValidationError
from coursetally.models import (
    LOCAL_ID_PREFIX,
    ORIGIN_LOCAL,
    NormalizedEvent,
    minutes_between,
    parse_iso_datetime,
)
from coursetally.session import SessionStore


logger = logging.getLogger(__name__)

STORAGE_KEY = "local_events"
UPDATABLE_FIELDS = {"title", "description", "location", "start_time", "end_time", "duration_minutes"}


def new_local_id() -> str:
    return f"{LOCAL_ID_PREFIX}{uuid.uuid4().hex}"


def _parse_time(field: str, value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} is not a valid ISO 8601 datetime: {value!r}") from exc


def _parse_duration(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        minutes = int(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"duration_minutes must be an integer, got {value!r}") from exc
    if minutes <= 0:
        raise ValidationError("duration_minutes must be positive")
    return minutes


def _resolve_times(
    start: datetime | None, end: datetime | None, duration: int | None
) -> tuple[datetime | None, datetime | None, int]:
    if start is not None and end is not None:
        if end <= start:
            raise ValidationError("end_time must be after start_time")
        return start, end, minutes_between(start, end)
    if start is not None:
        if duration is None:
            raise ValidationError("end_time or duration_minutes is required with start_time")
        return start, start + timedelta(minutes=duration), duration
    if end is not None:
        raise ValidationError("start_time is required when end_time is given")
    if duration is None:
        raise ValidationError("start_time/end_time or a positive duration_minutes is required")
    return None, None, duration


@dataclass
class LocalEventRequest:
    title: str
    description: str = ""
    location: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_minutes: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LocalEventRequest":
        return cls(
            title=str(data.get("title", "") or ""),
            description=str(data.get("description", "") or ""),
            location=str(data.get("location", "") or ""),
            start_time=_parse_time("start_time", data.get("start_time")),
            end_time=_parse_time("end_time", data.get("end_time")),
            duration_minutes=_parse_duration(data.get("duration_minutes")),
        )


class LocalEventStore:
    def __init__(self, session: SessionStore) -> None:
        self.session = session

    def _load(self) -> list[NormalizedEvent]:
        return [NormalizedEvent.from_dict(item) for item in self.session.get_json(STORAGE_KEY, [])]

    def _save(self, events: list[NormalizedEvent]) -> None:
        self.session.set_json(STORAGE_KEY, [event.to_dict() for event in events])

    def create(self, request: LocalEventRequest | dict[str, Any]) -> NormalizedEvent:
        if isinstance(request, dict):
            request = LocalEventRequest.from_dict(request)
        title = request.title.strip()
        if not title:
            raise ValidationError("title is required")
        duration = request.duration_minutes
        if duration is not None and duration <= 0:
            raise ValidationError("duration_minutes must be positive")
        start, end, minutes = _resolve_times(request.start_time, request.end_time, duration)
        event_id = new_local_id()
        event = NormalizedEvent(
            id=event_id,
            source_event_id=event_id,
            title=title,
            description=request.description,
            location=request.location,
            start_time=start,
            end_time=end,
            duration_minutes=minutes,
            is_all_day=False,
            origin=ORIGIN_LOCAL,
            status="confirmed",
        )
        with self.session.lock:
            events = self._load()
            events.append(event)
            self._save(events)
        logger.info("Created local event %s (%s)", event.id, event.title)
        return event

    def update(self, event_id: str, fields: dict[str, Any]) -> NormalizedEvent | None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"unsupported fields: {', '.join(sorted(unknown))}")
        with self.session.lock:
            events = self._load()
            for index, current in enumerate(events):
                if current.id == event_id:
                    break
            else:
                return None

            title = current.title
            if "title" in fields:
                title = str(fields["title"] or "").strip()
                if not title:
                    raise ValidationError("title is required")
            start = _parse_time("start_time", fields["start_time"]) if "start_time" in fields else current.start_time
            end = _parse_time("end_time", fields["end_time"]) if "end_time" in fields else current.end_time
            duration = _parse_duration(fields.get("duration_minutes"))
            boundary_changed = "start_time" in fields or "end_time" in fields
            if duration is not None and not boundary_changed and start is not None:
                end = start + timedelta(minutes=duration)
            if duration is None:
                duration = current.duration_minutes or None
            start, end, minutes = _resolve_times(start, end, duration)

            updated = current.with_updates(
                title=title,
                description=str(fields.get("description", current.description) or ""),
                location=str(fields.get("location", current.location) or ""),
                start_time=start,
                end_time=end,
                duration_minutes=minutes,
            )
            events[index] = updated
            self._save(events)
        return updated

    def delete(self, event_id: str) -> bool:
        with self.session.lock:
            events = self._load()
            remaining = [event for event in events if event.id != event_id]
            if len(remaining) == len(events):
                return False
            self._save(remaining)
        logger.info("Deleted local event %s", event_id)
        return True

    def get(self, event_id: str) -> NormalizedEvent | None:
        for event in self._load():
            if event.id == event_id:
                return event
        return None

    def list_all(self) -> list[NormalizedEvent]:
        return self._load()

    def count(self) -> int:
        return len(self.session.get_json(STORAGE_KEY, []))

    def clear(self) -> None:
        self.session.remove(STORAGE_KEY)
