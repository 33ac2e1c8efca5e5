from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Protocol

from coursetally.cache import MasterEntityCache, WeeklyEventCache
from coursetally.calendar_client import CalendarProvider
from coursetally.merge import build_week_view
from coursetally.models import NormalizedEvent, WeekConfig, serialize_datetime
from coursetally.normalizer import normalize_events
from coursetally.reconciler import ReconciliationController
from coursetally.selection import SelectionStore
from coursetally.state_store import StateStore
from coursetally.week import week_range


logger = logging.getLogger(__name__)

SOURCE_EVENTS = "events"
SOURCE_MASTER_ENTITIES = "master_entities"
SOURCE_SELECTION = "selection"

STATUS_OK = "ok"
STATUS_ERROR = "error"
STATUS_SKIPPED = "skipped"


class SelectionLedger(Protocol):
    def is_configured(self) -> bool: ...

    def get_user_course_cache(self) -> list[str]: ...

    def update_user_course_cache(self, course_ids: list[str]) -> int: ...


@dataclass
class SourceReport:
    source: str
    status: str
    message: str = ""
    count: int = 0
    error: str = ""


@dataclass
class RefreshReport:
    offset: int
    week_start: datetime
    week_end: datetime
    generation: int
    sources: dict[str, SourceReport] = field(default_factory=dict)
    drag_cancelled: bool = False

    @property
    def ok(self) -> bool:
        return all(report.status != STATUS_ERROR for report in self.sources.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "offset": self.offset,
            "week_start": serialize_datetime(self.week_start),
            "week_end": serialize_datetime(self.week_end),
            "generation": self.generation,
            "ok": self.ok,
            "drag_cancelled": self.drag_cancelled,
            "sources": {name: asdict(report) for name, report in self.sources.items()},
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class RefreshOrchestrator:
    """Loads one week from every upstream source in parallel.

    Sources fail independently. Only the most recent refresh may replace the
    week view; results of a superseded refresh are dropped.
    """

    def __init__(
        self,
        controller: ReconciliationController,
        calendar: CalendarProvider,
        master_entities: MasterEntityCache,
        weekly_events: WeeklyEventCache,
        selection: SelectionStore,
        ledger: SelectionLedger | None,
        week_config: WeekConfig,
        state_store: StateStore | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.controller = controller
        self.calendar = calendar
        self.master_entities = master_entities
        self.weekly_events = weekly_events
        self.selection = selection
        self.ledger = ledger
        self.week_config = week_config
        self.state_store = state_store
        self.clock = clock
        self._lock = threading.Lock()
        self._generation = 0

    @property
    def generation(self) -> int:
        return self._generation

    def _next_generation(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def _is_current(self, generation: int) -> bool:
        with self._lock:
            return generation == self._generation

    def refresh(self, offset: int, force: bool = False, now: datetime | None = None) -> RefreshReport:
        generation = self._next_generation()
        week_start, week_end = week_range(offset, now or self.clock(), self.week_config.timezone)
        report = RefreshReport(offset=offset, week_start=week_start, week_end=week_end, generation=generation)

        tasks: dict[str, Callable[[], SourceReport]] = {
            SOURCE_EVENTS: lambda: self._refresh_events(offset, week_start, week_end, generation, force, report),
            SOURCE_MASTER_ENTITIES: lambda: self._refresh_master_entities(force),
            SOURCE_SELECTION: self._sync_selection,
        }
        with ThreadPoolExecutor(max_workers=len(tasks), thread_name_prefix="coursetally-refresh") as pool:
            futures = {name: pool.submit(self._guarded, name, task) for name, task in tasks.items()}
            for name, future in futures.items():
                report.sources[name] = future.result()

        logger.info(
            "Refresh #%d for offset %d: %s",
            generation,
            offset,
            ", ".join(f"{name}={item.status}" for name, item in report.sources.items()),
        )
        if self.state_store is not None:
            self.state_store.record_audit_event(
                subject="refresh",
                ref=str(offset),
                action="refresh",
                details=report.to_dict(),
            )
        return report

    def _guarded(self, name: str, task: Callable[[], SourceReport]) -> SourceReport:
        try:
            return task()
        except Exception as exc:
            logger.warning("Refresh source %s failed: %s: %s", name, type(exc).__name__, exc)
            return SourceReport(
                source=name,
                status=STATUS_ERROR,
                message=f"{type(exc).__name__}: {exc}",
                error=type(exc).__name__,
            )

    def _load_remote_events(
        self, offset: int, week_start: datetime, week_end: datetime, force: bool
    ) -> tuple[list[NormalizedEvent], bool]:
        if not force:
            cached = self.weekly_events.get(offset, week_start)
            if cached is not None:
                return cached, True
        remote = [
            event
            for event in normalize_events(self.calendar.fetch_remote_events(week_start, week_end))
            if not event.is_all_day
        ]
        self.weekly_events.put(offset, week_start, remote)
        return remote, False

    def _refresh_events(
        self,
        offset: int,
        week_start: datetime,
        week_end: datetime,
        generation: int,
        force: bool,
        report: RefreshReport,
    ) -> SourceReport:
        remote, from_cache = self._load_remote_events(offset, week_start, week_end, force)
        with self.controller.lock:
            if not self._is_current(generation):
                logger.info("Discarded events of superseded refresh #%d", generation)
                return SourceReport(source=SOURCE_EVENTS, status=STATUS_SKIPPED, message="superseded")
            view = build_week_view(offset, week_start, week_end, remote, self.controller.local_events.list_all())
            report.drag_cancelled = self.controller.replace_week(view)
        return SourceReport(
            source=SOURCE_EVENTS,
            status=STATUS_OK,
            message="cached" if from_cache else "fetched",
            count=len(view.events),
        )

    def _refresh_master_entities(self, force: bool) -> SourceReport:
        entities = self.master_entities.get(force_refresh=force)
        self.controller.set_master_entities(entities)
        return SourceReport(source=SOURCE_MASTER_ENTITIES, status=STATUS_OK, count=len(entities))

    def _sync_selection(self) -> SourceReport:
        if self.ledger is None or not self.ledger.is_configured():
            return SourceReport(source=SOURCE_SELECTION, status=STATUS_SKIPPED, message="ledger not configured")
        with self.selection.lock:
            if self.selection.is_dirty():
                selected = self.selection.list_selected()
                self.ledger.update_user_course_cache(selected)
                self.selection.mark_synced()
                return SourceReport(source=SOURCE_SELECTION, status=STATUS_OK, message="pushed", count=len(selected))
            server_ids = self.ledger.get_user_course_cache()
            self.selection.replace(server_ids)
        return SourceReport(
            source=SOURCE_SELECTION,
            status=STATUS_OK,
            message="pulled",
            count=len(self.selection.list_selected()),
        )

    def rebuild_week(self) -> None:
        self.controller.rebuild_view()
