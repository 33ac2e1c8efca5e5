from __future__ import annotations

import logging
from typing import Any

import requests

from coursetally.errors import ProviderError, SubmissionError, ValidationError
from coursetally.identity import IdentityProvider, checked_json
from coursetally.models import RECORD_CALENDAR, LedgerConfig, SubmissionRecord, SubmissionResult


logger = logging.getLogger(__name__)

ACTION_GET_USER_COURSE_CACHE = "getUserCourseCache"
ACTION_GET_SUBMITTED_RECORDS = "getSubmittedRecords"
ACTION_SUBMIT_RECORDS = "submitRecords"
ACTION_UPDATE_USER_COURSE_CACHE = "updateUserCourseCache"


def validate_records(records: list[SubmissionRecord]) -> None:
    for index, record in enumerate(records, start=1):
        if not record.event_name or not record.event_type or not record.master_entity_id:
            raise ValidationError(f"Record {index} is missing required fields")
        if record.duration_minutes <= 0:
            raise ValidationError(f"Record {index} ({record.event_name}) has no duration")
        if record.event_type == RECORD_CALENDAR and (not record.start_time or not record.end_time):
            raise ValidationError(f"Record {index} (calendar type) is missing startTime or endTime")


class AppsScriptLedger:
    source = "ledger"

    def __init__(
        self,
        config: LedgerConfig,
        identity: IdentityProvider,
        session: requests.Session | None = None,
    ) -> None:
        self.config = config
        self.identity = identity
        self.http = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.config.url)

    def _request(self, action: str, params: dict[str, Any], method: str = "GET") -> dict[str, Any]:
        if not self.is_configured():
            raise ProviderError(self.source, "ledger url is not configured")
        try:
            if method == "GET":
                response = self.http.get(
                    self.config.url,
                    params={"action": action, **params},
                    timeout=self.config.timeout_seconds,
                )
            else:
                response = self.http.post(
                    self.config.url,
                    json={"action": action, **params},
                    headers={"Content-Type": "application/json"},
                    timeout=self.config.timeout_seconds,
                )
        except requests.RequestException as exc:
            raise ProviderError(self.source, f"{type(exc).__name__}: {exc}") from exc
        payload = checked_json(response, self.source)
        if not isinstance(payload, dict):
            raise ProviderError(self.source, "response root must be an object")
        if not payload.get("success") and payload.get("error"):
            raise ProviderError(self.source, f"{payload['error']}: {payload.get('message', '')}".strip())
        return payload

    def submit(self, week_id: str, records: list[SubmissionRecord]) -> SubmissionResult:
        validate_records(records)
        logger.info("Submitting %d records for week %s", len(records), week_id)
        try:
            payload = self._request(
                ACTION_SUBMIT_RECORDS,
                {
                    "email": self.identity.user_email(),
                    "week": week_id,
                    "records": [record.to_payload() for record in records],
                },
                method="POST",
            )
        except ProviderError as exc:
            raise SubmissionError(str(exc), code=str(exc.status_code or "")) from exc
        return SubmissionResult(
            message=str(payload.get("message", "")),
            new_records=int(payload.get("newRecords", 0) or 0),
            marked_as_invalid=int(payload.get("markedAsInvalid", 0) or 0),
            batch_id=str(payload.get("batchId", "") or ""),
            week_id=week_id,
        )

    def get_submitted_records(self, week_id: str) -> list[dict[str, Any]]:
        payload = self._request(
            ACTION_GET_SUBMITTED_RECORDS,
            {"email": self.identity.user_email(), "week": week_id},
        )
        data = payload.get("data", [])
        return [item for item in data if isinstance(item, dict)] if isinstance(data, list) else []

    def get_user_course_cache(self) -> list[str]:
        payload = self._request(ACTION_GET_USER_COURSE_CACHE, {"email": self.identity.user_email()})
        course_ids = payload.get("courseIds", [])
        if not isinstance(course_ids, list):
            return []
        return [str(item).strip() for item in course_ids if str(item).strip()]

    def update_user_course_cache(self, course_ids: list[str]) -> int:
        payload = self._request(
            ACTION_UPDATE_USER_COURSE_CACHE,
            {"email": self.identity.user_email(), "courseIds": list(course_ids)},
            method="POST",
        )
        return int(payload.get("courseCount", len(course_ids)) or 0)
