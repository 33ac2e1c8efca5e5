from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from coursetally.models import CacheEnvelope, MasterEntity, NormalizedEvent, parse_iso_datetime
from coursetally.state_store import StateStore


logger = logging.getLogger(__name__)

MASTER_ENTITIES_KEY = "master_entities_cache"
WEEKLY_EVENTS_PREFIX = "calendar_events_week_"

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class MasterEntityProvider(Protocol):
    def fetch_master_entities(self) -> list[MasterEntity]: ...


class EnvelopeCache:
    """TTL-checked envelopes persisted in the state store's key/value table."""

    def __init__(self, state_store: StateStore, clock: Clock = _utc_now) -> None:
        self.state_store = state_store
        self.clock = clock

    def read(self, key: str) -> CacheEnvelope | None:
        raw = self.state_store.get_json_meta(key)
        if raw is None:
            return None
        try:
            envelope = CacheEnvelope.from_dict(raw)
        except (KeyError, TypeError, ValueError):
            logger.warning("Discarding unreadable cache entry %s", key)
            self.state_store.delete_meta(key)
            return None
        if not envelope.is_valid(self.clock()):
            logger.info("Cache entry %s expired", key)
            self.state_store.delete_meta(key)
            return None
        return envelope

    def write(self, key: str, payload: Any, ttl_minutes: int) -> CacheEnvelope:
        envelope = CacheEnvelope(payload=payload, cached_at=self.clock(), ttl_minutes=ttl_minutes)
        self.state_store.set_json_meta(key, envelope.to_dict())
        return envelope

    def evict(self, key: str) -> bool:
        return self.state_store.delete_meta(key)


class MasterEntityCache:
    def __init__(
        self,
        provider: MasterEntityProvider,
        cache: EnvelopeCache,
        ttl_minutes: int = 60,
    ) -> None:
        self.provider = provider
        self.cache = cache
        self.ttl_minutes = ttl_minutes
        self._lock = threading.Lock()

    def get(self, force_refresh: bool = False) -> list[MasterEntity]:
        with self._lock:
            if not force_refresh:
                envelope = self.cache.read(MASTER_ENTITIES_KEY)
                if envelope is not None and isinstance(envelope.payload, list):
                    entities = [MasterEntity.from_dict(item) for item in envelope.payload]
                    logger.debug("Using cached master entities (%d)", len(entities))
                    return entities
            # Provider errors propagate before the cache is touched.
            entities = self.provider.fetch_master_entities()
            self.cache.write(MASTER_ENTITIES_KEY, [item.to_dict() for item in entities], self.ttl_minutes)
            logger.info("Cached %d master entities for %d minutes", len(entities), self.ttl_minutes)
            return entities

    def find(self, entity_id: str) -> MasterEntity | None:
        for entity in self.get():
            if entity.id == entity_id:
                return entity
        return None

    def find_many(self, entity_ids: list[str]) -> list[MasterEntity]:
        wanted = set(entity_ids)
        return [entity for entity in self.get() if entity.id in wanted]

    def invalidate(self) -> None:
        self.cache.evict(MASTER_ENTITIES_KEY)


class WeeklyEventCache:
    """Normalized remote events per week offset."""

    def __init__(self, cache: EnvelopeCache, ttl_minutes: int = 10) -> None:
        self.cache = cache
        self.ttl_minutes = ttl_minutes

    @staticmethod
    def key(offset: int) -> str:
        return f"{WEEKLY_EVENTS_PREFIX}{int(offset)}"

    def get(self, offset: int, week_start: datetime) -> list[NormalizedEvent] | None:
        envelope = self.cache.read(self.key(offset))
        if envelope is None or not isinstance(envelope.payload, dict):
            return None
        cached_start = parse_iso_datetime(envelope.payload.get("week_start"))
        if cached_start != week_start:
            # The same offset now points at a different week.
            self.cache.evict(self.key(offset))
            return None
        return [NormalizedEvent.from_dict(item) for item in envelope.payload.get("events", [])]

    def put(self, offset: int, week_start: datetime, events: list[NormalizedEvent]) -> None:
        payload = {
            "week_start": week_start.isoformat(),
            "events": [event.to_dict() for event in events],
        }
        self.cache.write(self.key(offset), payload, self.ttl_minutes)

    def clear_all(self) -> int:
        removed = 0
        for key in self.cache.state_store.meta_keys(WEEKLY_EVENTS_PREFIX):
            if self.cache.evict(key):
                removed += 1
        return removed
