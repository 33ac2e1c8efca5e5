from __future__ import annotations

import logging
from typing import Callable, Iterable

from coursetally.categorization import CategorizationStore
from coursetally.errors import OrphanReference
from coursetally.models import (
    RECORD_CALENDAR,
    RECORD_MANUAL,
    Categorization,
    EventRef,
    NormalizedEvent,
    SubmissionRecord,
    minutes_between,
    serialize_datetime,
)


logger = logging.getLogger(__name__)


def _check_reference(categorization: Categorization, known: set[EventRef]) -> None:
    if categorization.personal_event_ref not in known:
        raise OrphanReference(categorization.personal_event_ref, categorization.personal_event_title)


def record_duration(categorization: Categorization) -> int:
    derived = minutes_between(categorization.personal_event_start, categorization.personal_event_end)
    if not categorization.personal_event_ref.is_local:
        return derived
    manual = categorization.manual_duration_minutes
    if manual is not None and manual > 0:
        return int(manual)
    return derived


def to_record(categorization: Categorization) -> SubmissionRecord:
    duration = record_duration(categorization)
    if categorization.personal_event_ref.is_local:
        return SubmissionRecord(
            event_name=categorization.personal_event_title,
            event_type=RECORD_MANUAL,
            duration_minutes=duration,
            master_entity_id=categorization.master_entity_id,
        )
    return SubmissionRecord(
        event_name=categorization.personal_event_title,
        event_type=RECORD_CALENDAR,
        duration_minutes=duration,
        master_entity_id=categorization.master_entity_id,
        start_time=serialize_datetime(categorization.personal_event_start),
        end_time=serialize_datetime(categorization.personal_event_end),
    )


def build_submission_batch(
    store: CategorizationStore,
    event_set: Iterable[NormalizedEvent],
    on_prune: Callable[[Categorization], None] | None = None,
) -> list[SubmissionRecord]:
    known = {event.ref for event in event_set}
    records: list[SubmissionRecord] = []
    orphans: list[Categorization] = []
    for categorization in store.list_all():
        try:
            _check_reference(categorization, known)
        except OrphanReference as exc:
            logger.warning("Pruning orphan categorization: %s", exc)
            orphans.append(categorization)
            continue
        records.append(to_record(categorization))
    if orphans:
        store.remove_many([item.personal_event_ref for item in orphans])
        if on_prune is not None:
            for item in orphans:
                on_prune(item)
    return records
