from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol
from urllib.parse import quote

import caldav
import requests
from caldav.lib.error import AuthorizationError

from coursetally.errors import AuthRequired, ProviderError
from coursetally.identity import IdentityProvider, bearer_headers, checked_json
from coursetally.models import CalendarConfig
from coursetally.normalizer import RawEvent, decode_raw_ical


logger = logging.getLogger(__name__)


class CalendarProvider(Protocol):
    def fetch_remote_events(self, range_start: datetime, range_end: datetime) -> list[RawEvent]: ...


class GoogleCalendarProvider:
    source = "calendar"

    def __init__(
        self,
        config: CalendarConfig,
        identity: IdentityProvider,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.identity = identity
        self.http = session or requests.Session()

    def _events_endpoint(self) -> str:
        base = self.config.api_base.rstrip("/")
        return f"{base}/calendars/{quote(self.config.calendar_id, safe='')}/events"

    def fetch_remote_events(self, range_start: datetime, range_end: datetime) -> list[RawEvent]:
        headers = bearer_headers(self.identity)
        params: dict[str, Any] = {
            "timeMin": range_start.isoformat(),
            "timeMax": range_end.isoformat(),
            "singleEvents": "true",
            "orderBy": "startTime",
            "maxResults": str(self.config.max_results),
        }
        items: list[RawEvent] = []
        while True:
            try:
                response = self.http.get(
                    self._events_endpoint(),
                    headers=headers,
                    params=params,
                    timeout=self.config.timeout_seconds,
                )
            except requests.RequestException as exc:
                raise ProviderError(self.source, f"{type(exc).__name__}: {exc}") from exc
            payload = checked_json(response, self.source)
            items.extend(item for item in payload.get("items", []) if isinstance(item, dict))
            page_token = payload.get("nextPageToken")
            if not page_token:
                break
            params["pageToken"] = page_token
        logger.info("Fetched %d calendar events from %s to %s", len(items), range_start, range_end)
        return items


class CalDAVCalendarProvider:
    source = "calendar"

    def __init__(self, config: CalendarConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar: Any = None

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.caldav_url or not self.config.caldav_username:
            raise AuthRequired("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.caldav_url,
            username=self.config.caldav_username,
            password=self.config.caldav_password,
        )
        self._principal = self._client.principal()

    def _get_calendar(self) -> Any:
        if self._calendar is not None:
            return self._calendar
        calendars = list(self._principal.calendars())
        if not calendars:
            raise ProviderError(self.source, "no calendars available")
        wanted = self.config.calendar_id.rstrip("/")
        chosen = calendars[0]
        if wanted != "primary":
            for calendar in calendars:
                name = getattr(calendar, "name", "") or ""
                if str(calendar.url).rstrip("/") == wanted or name == wanted:
                    chosen = calendar
                    break
            else:
                raise ProviderError(self.source, f"Calendar not found: {wanted}")
        self._calendar = chosen
        return chosen

    def fetch_remote_events(self, range_start: datetime, range_end: datetime) -> list[RawEvent]:
        try:
            self._connect()
            calendar = self._get_calendar()
            resources = calendar.search(start=range_start, end=range_end, event=True, expand=True)
        except AuthorizationError as exc:
            self._principal = None
            raise AuthRequired(f"{self.source}: CalDAV credential rejected") from exc
        except (AuthRequired, ProviderError):
            raise
        except Exception as exc:
            raise ProviderError(self.source, f"{type(exc).__name__}: {exc}") from exc
        items: list[RawEvent] = [decode_raw_ical(resource.data) for resource in resources]
        logger.info("Fetched %d CalDAV events from %s to %s", len(items), range_start, range_end)
        return items


def build_calendar_provider(config: CalendarConfig, identity: IdentityProvider) -> CalendarProvider:
    if config.provider == "caldav":
        return CalDAVCalendarProvider(config)
    return GoogleCalendarProvider(config, identity)
