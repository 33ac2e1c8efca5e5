from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Protocol

from coursetally.categorization import CategorizationStore
from coursetally.errors import AuthRequired, SubmissionError, ValidationError
from coursetally.export import build_submission_batch
from coursetally.ledger_client import validate_records
from coursetally.models import Categorization, SubmissionRecord, SubmissionResult, WeekView
from coursetally.state_store import StateStore
from coursetally.week import week_id


logger = logging.getLogger(__name__)


class Ledger(Protocol):
    def submit(self, week_id: str, records: list[SubmissionRecord]) -> SubmissionResult: ...

    def get_submitted_records(self, week_id: str) -> list[dict[str, Any]]: ...


def _elapsed_ms(started_at: datetime) -> int:
    return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)


class SubmissionService:
    def __init__(self, categorizations: CategorizationStore, ledger: Ledger, state_store: StateStore) -> None:
        self.categorizations = categorizations
        self.ledger = ledger
        self.state_store = state_store

    def preview(self, view: WeekView) -> list[SubmissionRecord]:
        return build_submission_batch(self.categorizations, view.event_set(), on_prune=self._audit_prune)

    def _audit_prune(self, categorization: Categorization) -> None:
        self.state_store.record_audit_event(
            subject="categorization",
            ref=str(categorization.personal_event_ref),
            action="prune_orphan",
            details={
                "master_entity_id": categorization.master_entity_id,
                "title": categorization.personal_event_title,
            },
        )

    def submit(self, view: WeekView) -> SubmissionResult:
        started_at = datetime.now(timezone.utc)
        target_week = week_id(view.week_start)
        records = self.preview(view)
        if not records:
            raise ValidationError("nothing to submit: no categorized events in this week")
        validate_records(records)

        try:
            result = self.ledger.submit(target_week, records)
        except (SubmissionError, AuthRequired) as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            self.state_store.record_submission_run(
                week_id=target_week,
                status="error",
                message=error_message,
                duration_ms=_elapsed_ms(started_at),
                record_count=len(records),
            )
            self.state_store.record_audit_event(
                subject="submission",
                ref=target_week,
                action="submit_error",
                details={"error": error_message, "records": len(records)},
            )
            logger.error("Submission for week %s failed: %s", target_week, error_message)
            raise

        run_id = self.state_store.record_submission_run(
            week_id=target_week,
            status="success",
            message=result.message,
            duration_ms=_elapsed_ms(started_at),
            record_count=len(records),
            new_records=result.new_records,
            marked_as_invalid=result.marked_as_invalid,
            batch_id=result.batch_id,
        )
        self.state_store.record_audit_event(
            subject="submission",
            ref=target_week,
            action="submit",
            details={"run_id": run_id, "batch_id": result.batch_id, "records": len(records)},
        )
        logger.info(
            "Submitted %d records for week %s (new=%d invalidated=%d)",
            len(records),
            target_week,
            result.new_records,
            result.marked_as_invalid,
        )
        return result

    def recent_runs(self, limit: int = 20) -> list[dict[str, Any]]:
        return self.state_store.recent_submission_runs(limit=limit)

    def submitted_records(self, target_week: str) -> list[dict[str, Any]]:
        return self.ledger.get_submitted_records(target_week)
