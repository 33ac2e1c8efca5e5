from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable

from coursetally.models import Categorization, EventRef, MasterEntity, NormalizedEvent
from coursetally.session import SessionStore


logger = logging.getLogger(__name__)

STORAGE_KEY = "event_categorizations"


class CategorizationStore:
    """Session-scoped mapping from personal events to master entities.

    Keyed by the event's ``EventRef``: an event has at most one
    categorization, and categorizing it again replaces the entry in place.
    """

    def __init__(self, session: SessionStore) -> None:
        self.session = session

    def _load(self) -> list[Categorization]:
        return [Categorization.from_dict(item) for item in self.session.get_json(STORAGE_KEY, [])]

    def _save(self, categorizations: list[Categorization]) -> None:
        self.session.set_json(STORAGE_KEY, [item.to_dict() for item in categorizations])

    def categorize(
        self,
        event: NormalizedEvent,
        entity: MasterEntity,
        notes: str | None = None,
    ) -> Categorization:
        now = datetime.now(timezone.utc)
        categorization = Categorization(
            id=f"cat_{uuid.uuid4().hex}",
            personal_event_ref=event.ref,
            master_entity_id=entity.id,
            personal_event_title=event.title,
            master_entity_title=entity.title,
            personal_event_start=event.start_time,
            personal_event_end=event.end_time,
            manual_duration_minutes=event.duration_minutes if event.ref.is_local else None,
            notes=notes or f"Categorized at {now.isoformat()}",
            created_at=now,
        )
        with self.session.lock:
            categorizations = self._load()
            for index, existing in enumerate(categorizations):
                if existing.personal_event_ref == event.ref:
                    categorizations[index] = categorization
                    logger.info("Updated categorization for %s -> %s", event.title, entity.title)
                    break
            else:
                categorizations.append(categorization)
                logger.info("Created categorization for %s -> %s", event.title, entity.title)
            self._save(categorizations)
        return categorization

    def uncategorize(self, ref: EventRef) -> bool:
        return self.remove_many([ref]) > 0

    def get(self, ref: EventRef) -> Categorization | None:
        for item in self._load():
            if item.personal_event_ref == ref:
                return item
        return None

    def list_all(self) -> list[Categorization]:
        return self._load()

    def by_master_entity(self, entity_id: str) -> list[Categorization]:
        return [item for item in self._load() if item.master_entity_id == entity_id]

    def remove_by_master_entity(self, entity_id: str) -> int:
        with self.session.lock:
            categorizations = self._load()
            remaining = [item for item in categorizations if item.master_entity_id != entity_id]
            removed = len(categorizations) - len(remaining)
            if removed:
                self._save(remaining)
        return removed

    def remove_many(self, refs: Iterable[EventRef]) -> int:
        targets = set(refs)
        if not targets:
            return 0
        with self.session.lock:
            categorizations = self._load()
            remaining = [item for item in categorizations if item.personal_event_ref not in targets]
            removed = len(categorizations) - len(remaining)
            if removed:
                self._save(remaining)
        return removed

    def count(self) -> int:
        return len(self.session.get_json(STORAGE_KEY, []))

    def clear(self) -> None:
        self.session.remove(STORAGE_KEY)
