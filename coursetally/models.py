from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from typing import Any


ORIGIN_REMOTE = "remote"
ORIGIN_LOCAL = "local"
EVENT_ORIGINS = (ORIGIN_REMOTE, ORIGIN_LOCAL)

RECORD_CALENDAR = "calendar"
RECORD_MANUAL = "manual"

LOCAL_ID_PREFIX = "local_"
UNTITLED_EVENT = "(untitled)"


def ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def minutes_between(start: datetime | None, end: datetime | None) -> int:
    """Whole minutes from start to end, floored and never negative."""
    if start is None or end is None:
        return 0
    seconds = (ensure_tz(end) - ensure_tz(start)).total_seconds()
    return max(0, math.floor(seconds / 60))


@dataclass
class IdentityConfig:
    access_token: str = ""
    user_email: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "IdentityConfig":
        data = data or {}
        return cls(
            access_token=str(data.get("access_token", "")).strip(),
            user_email=str(data.get("user_email", "")).strip(),
        )


@dataclass
class CalendarConfig:
    provider: str = "google"
    api_base: str = "https://www.googleapis.com/calendar/v3"
    calendar_id: str = "primary"
    max_results: int = 250
    caldav_url: str = ""
    caldav_username: str = ""
    caldav_password: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalendarConfig":
        data = data or {}
        provider = str(data.get("provider", "google")).strip().lower()
        if provider not in {"google", "caldav"}:
            provider = "google"
        return cls(
            provider=provider,
            api_base=str(data.get("api_base", "https://www.googleapis.com/calendar/v3")).strip()
            or "https://www.googleapis.com/calendar/v3",
            calendar_id=str(data.get("calendar_id", "primary")).strip() or "primary",
            max_results=max(1, int(data.get("max_results", 250))),
            caldav_url=str(data.get("caldav_url", "")).strip(),
            caldav_username=str(data.get("caldav_username", "")).strip(),
            caldav_password=str(data.get("caldav_password", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class ReferenceConfig:
    api_base: str = "https://sheets.googleapis.com/v4/spreadsheets"
    spreadsheet_id: str = ""
    sheet_name: str = "Courses"
    id_column: int = 0
    title_column: int = 3
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ReferenceConfig":
        data = data or {}
        return cls(
            api_base=str(data.get("api_base", "https://sheets.googleapis.com/v4/spreadsheets")).strip()
            or "https://sheets.googleapis.com/v4/spreadsheets",
            spreadsheet_id=str(data.get("spreadsheet_id", "")).strip(),
            sheet_name=str(data.get("sheet_name", "Courses")).strip() or "Courses",
            id_column=max(0, int(data.get("id_column", 0))),
            title_column=max(0, int(data.get("title_column", 3))),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
        )


@dataclass
class LedgerConfig:
    url: str = ""
    timeout_seconds: int = 60

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LedgerConfig":
        data = data or {}
        return cls(
            url=str(data.get("url", "")).strip(),
            timeout_seconds=max(1, int(data.get("timeout_seconds", 60))),
        )


@dataclass
class CacheConfig:
    master_entities_ttl_minutes: int = 60
    weekly_events_ttl_minutes: int = 10

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CacheConfig":
        data = data or {}
        return cls(
            master_entities_ttl_minutes=max(1, int(data.get("master_entities_ttl_minutes", 60))),
            weekly_events_ttl_minutes=max(1, int(data.get("weekly_events_ttl_minutes", 10))),
        )


@dataclass
class WeekConfig:
    timezone: str = "UTC"
    default_offset: int = -1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "WeekConfig":
        data = data or {}
        return cls(
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
            default_offset=int(data.get("default_offset", -1)),
        )


@dataclass
class RefreshConfig:
    enabled: bool = True
    interval_seconds: int = 300

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RefreshConfig":
        data = data or {}
        return cls(
            enabled=bool(data.get("enabled", True)),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        level = str(data.get("level", "INFO")).strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            level = "INFO"
        return cls(level=level)


@dataclass
class AppConfig:
    identity: IdentityConfig = field(default_factory=IdentityConfig)
    calendar: CalendarConfig = field(default_factory=CalendarConfig)
    reference: ReferenceConfig = field(default_factory=ReferenceConfig)
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    week: WeekConfig = field(default_factory=WeekConfig)
    refresh: RefreshConfig = field(default_factory=RefreshConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            identity=IdentityConfig.from_dict(data.get("identity")),
            calendar=CalendarConfig.from_dict(data.get("calendar")),
            reference=ReferenceConfig.from_dict(data.get("reference")),
            ledger=LedgerConfig.from_dict(data.get("ledger")),
            cache=CacheConfig.from_dict(data.get("cache")),
            week=WeekConfig.from_dict(data.get("week")),
            refresh=RefreshConfig.from_dict(data.get("refresh")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass(frozen=True)
class EventRef:
    """Tagged identity of a personal event: ``(kind, id)``."""

    kind: str
    id: str

    def __post_init__(self) -> None:
        if self.kind not in EVENT_ORIGINS:
            raise ValueError(f"unknown event origin: {self.kind!r}")

    @property
    def is_local(self) -> bool:
        return self.kind == ORIGIN_LOCAL

    def to_dict(self) -> dict[str, str]:
        return {"kind": self.kind, "id": self.id}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "EventRef":
        return cls(kind=str(data.get("kind", "")), id=str(data.get("id", "")))

    def __str__(self) -> str:
        return f"{self.kind}:{self.id}"


@dataclass
class NormalizedEvent:
    id: str
    source_event_id: str
    title: str = UNTITLED_EVENT
    description: str = ""
    location: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None
    duration_minutes: int = 0
    is_all_day: bool = False
    origin: str = ORIGIN_REMOTE
    status: str = "confirmed"

    @property
    def ref(self) -> EventRef:
        return EventRef(kind=self.origin, id=self.source_event_id)

    @property
    def is_scheduled(self) -> bool:
        return self.start_time is not None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_time"] = serialize_datetime(self.start_time)
        payload["end_time"] = serialize_datetime(self.end_time)
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "NormalizedEvent":
        return cls(
            id=str(data.get("id", "")),
            source_event_id=str(data.get("source_event_id", data.get("id", ""))),
            title=str(data.get("title", "") or UNTITLED_EVENT),
            description=str(data.get("description", "") or ""),
            location=str(data.get("location", "") or ""),
            start_time=parse_iso_datetime(data.get("start_time")),
            end_time=parse_iso_datetime(data.get("end_time")),
            duration_minutes=max(0, int(data.get("duration_minutes", 0) or 0)),
            is_all_day=bool(data.get("is_all_day", False)),
            origin=str(data.get("origin", ORIGIN_REMOTE)),
            status=str(data.get("status", "confirmed") or "confirmed"),
        )

    def clone(self) -> "NormalizedEvent":
        return NormalizedEvent.from_dict(self.to_dict())

    def with_updates(self, **kwargs: Any) -> "NormalizedEvent":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied


@dataclass(frozen=True)
class MasterEntity:
    id: str
    title: str
    source_row_id: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MasterEntity":
        return cls(
            id=str(data.get("id", "")).strip(),
            title=str(data.get("title", "")).strip(),
            source_row_id=int(data.get("source_row_id", 0) or 0),
        )


@dataclass
class Categorization:
    id: str
    personal_event_ref: EventRef
    master_entity_id: str
    personal_event_title: str = ""
    master_entity_title: str = ""
    personal_event_start: datetime | None = None
    personal_event_end: datetime | None = None
    manual_duration_minutes: int | None = None
    notes: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "personal_event_ref": self.personal_event_ref.to_dict(),
            "master_entity_id": self.master_entity_id,
            "personal_event_title": self.personal_event_title,
            "master_entity_title": self.master_entity_title,
            "personal_event_start": serialize_datetime(self.personal_event_start),
            "personal_event_end": serialize_datetime(self.personal_event_end),
            "manual_duration_minutes": self.manual_duration_minutes,
            "notes": self.notes,
            "created_at": serialize_datetime(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Categorization":
        manual = data.get("manual_duration_minutes")
        return cls(
            id=str(data.get("id", "")),
            personal_event_ref=EventRef.from_dict(data.get("personal_event_ref") or {}),
            master_entity_id=str(data.get("master_entity_id", "")),
            personal_event_title=str(data.get("personal_event_title", "")),
            master_entity_title=str(data.get("master_entity_title", "")),
            personal_event_start=_parse_or_none(data.get("personal_event_start")),
            personal_event_end=_parse_or_none(data.get("personal_event_end")),
            manual_duration_minutes=int(manual) if manual is not None else None,
            notes=str(data.get("notes", "") or ""),
            created_at=_parse_or_none(data.get("created_at")) or datetime.now(timezone.utc),
        )


def _parse_or_none(value: Any) -> datetime | None:
    try:
        return parse_iso_datetime(value)
    except (TypeError, ValueError):
        return None


@dataclass
class SubmissionRecord:
    event_name: str
    event_type: str
    duration_minutes: int
    master_entity_id: str
    start_time: str | None = None
    end_time: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "eventName": self.event_name,
            "eventType": self.event_type,
            "duration": self.duration_minutes,
            "courseId": self.master_entity_id,
        }
        if self.event_type == RECORD_CALENDAR:
            payload["startTime"] = self.start_time
            payload["endTime"] = self.end_time
        return payload


@dataclass
class SubmissionResult:
    message: str
    new_records: int
    marked_as_invalid: int
    batch_id: str
    week_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class CacheEnvelope:
    payload: Any
    cached_at: datetime
    ttl_minutes: int

    def is_valid(self, now: datetime) -> bool:
        return ensure_tz(now) - ensure_tz(self.cached_at) < timedelta(minutes=self.ttl_minutes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "payload": self.payload,
            "cached_at": serialize_datetime(self.cached_at),
            "ttl_minutes": self.ttl_minutes,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEnvelope":
        cached_at = parse_iso_datetime(data["cached_at"])
        if cached_at is None:
            raise ValueError("cache envelope without cached_at")
        return cls(payload=data.get("payload"), cached_at=cached_at, ttl_minutes=int(data["ttl_minutes"]))


@dataclass
class WeekView:
    offset: int
    week_start: datetime
    week_end: datetime
    events: list[NormalizedEvent] = field(default_factory=list)
    unscheduled: list[NormalizedEvent] = field(default_factory=list)

    def event_set(self) -> list[NormalizedEvent]:
        return [*self.events, *self.unscheduled]

    def find(self, ref: EventRef) -> NormalizedEvent | None:
        for event in self.event_set():
            if event.ref == ref:
                return event
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "offset": self.offset,
            "week_start": serialize_datetime(self.week_start),
            "week_end": serialize_datetime(self.week_end),
            "events": [event.to_dict() for event in self.events],
            "unscheduled": [event.to_dict() for event in self.unscheduled],
        }


@dataclass(frozen=True)
class DragPayload:
    event: NormalizedEvent


@dataclass(frozen=True)
class TimeSlot:
    day: int
    hour: int
    master_entity_id: str | None = None


@dataclass(frozen=True)
class MasterEntityCard:
    master_entity_id: str


@dataclass(frozen=True)
class PersonalPanel:
    pass


DropTarget = TimeSlot | MasterEntityCard | PersonalPanel
