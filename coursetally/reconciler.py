from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Iterable

from coursetally.categorization import CategorizationStore
from coursetally.errors import ValidationError
from coursetally.local_events import LocalEventRequest, LocalEventStore
from coursetally.merge import build_week_view
from coursetally.models import (
    ORIGIN_REMOTE,
    Categorization,
    DragPayload,
    DropTarget,
    EventRef,
    MasterEntity,
    MasterEntityCard,
    NormalizedEvent,
    PersonalPanel,
    TimeSlot,
    WeekView,
    minutes_between,
    serialize_datetime,
)
from coursetally.selection import SelectionStore
from coursetally.state_store import StateStore
from coursetally.week import slot_start


logger = logging.getLogger(__name__)


@dataclass
class DropOutcome:
    applied: bool
    reason: str
    event: NormalizedEvent | None = None
    categorization: Categorization | None = None


@dataclass
class ClearReport:
    local_events: int
    categorizations: int

    def to_dict(self) -> dict[str, int]:
        return {"local_events": self.local_events, "categorizations": self.categorizations}


class ReconciliationController:
    def __init__(
        self,
        local_events: LocalEventStore,
        categorizations: CategorizationStore,
        selection: SelectionStore,
        state_store: StateStore | None = None,
    ) -> None:
        self.local_events = local_events
        self.categorizations = categorizations
        self.selection = selection
        self.state_store = state_store
        self.lock = threading.RLock()
        self._view: WeekView | None = None
        self._entities: dict[str, MasterEntity] = {}
        self._active_drag: DragPayload | None = None

    def _audit(self, subject: str, ref: str, action: str, details: dict[str, Any]) -> None:
        if self.state_store is None:
            return
        self.state_store.record_audit_event(subject=subject, ref=ref, action=action, details=details)

    # week view

    @property
    def view(self) -> WeekView | None:
        return self._view

    def require_view(self) -> WeekView:
        if self._view is None:
            raise ValidationError("no week loaded; refresh first")
        return self._view

    def replace_week(self, view: WeekView) -> bool:
        """Swap in a freshly loaded week. Returns True if an active drag was cancelled."""
        with self.lock:
            self._view = view
            drag = self._active_drag
            if drag is not None and view.find(drag.event.ref) is None:
                logger.info("Cancelled drag of %s: event vanished after refresh", drag.event.ref)
                self._active_drag = None
                return True
            return False

    def rebuild_view(self) -> WeekView | None:
        with self.lock:
            if self._view is None:
                return None
            remote = [event for event in self._view.events if event.origin == ORIGIN_REMOTE]
            view = build_week_view(
                self._view.offset,
                self._view.week_start,
                self._view.week_end,
                remote,
                self.local_events.list_all(),
            )
            self.replace_week(view)
            return view

    def set_master_entities(self, entities: Iterable[MasterEntity]) -> None:
        with self.lock:
            self._entities = {entity.id: entity for entity in entities}

    def master_entities(self) -> list[MasterEntity]:
        return list(self._entities.values())

    def find_master_entity(self, entity_id: str) -> MasterEntity | None:
        return self._entities.get(entity_id)

    # local events

    def create_local_event(self, request: LocalEventRequest | dict[str, Any]) -> NormalizedEvent:
        with self.lock:
            event = self.local_events.create(request)
            self.rebuild_view()
        self._audit("event", str(event.ref), "create_local_event", {"title": event.title})
        return event

    def update_local_event(self, event_id: str, fields: dict[str, Any]) -> NormalizedEvent | None:
        with self.lock:
            event = self.local_events.update(event_id, fields)
            if event is not None:
                self.rebuild_view()
        if event is not None:
            self._audit("event", str(event.ref), "update_local_event", {"fields": sorted(fields)})
        return event

    def delete_local_event(self, event_id: str) -> bool:
        with self.lock:
            deleted = self.local_events.delete(event_id)
            if deleted:
                self.rebuild_view()
        if deleted:
            self._audit("event", f"local:{event_id}", "delete_local_event", {})
        return deleted

    # categorization

    def categorize(
        self,
        event: NormalizedEvent,
        entity: MasterEntity,
        notes: str | None = None,
    ) -> Categorization:
        with self.lock:
            categorization = self.categorizations.categorize(event, entity, notes)
        self._audit(
            "categorization",
            str(event.ref),
            "categorize",
            {"master_entity_id": entity.id, "title": event.title},
        )
        return categorization

    def uncategorize(self, ref: EventRef) -> bool:
        with self.lock:
            removed = self.categorizations.uncategorize(ref)
        if removed:
            self._audit("categorization", str(ref), "uncategorize", {})
        return removed

    def pending_removal_count(self, entity_id: str) -> int:
        return len(self.categorizations.by_master_entity(entity_id))

    def remove_master_entity(self, entity_id: str, confirmed_count: int) -> int:
        """``confirmed_count`` must match the live categorization count for ``entity_id``."""
        with self.lock:
            pending = self.pending_removal_count(entity_id)
            if int(confirmed_count) != pending:
                raise ValidationError(
                    f"confirmation covers {confirmed_count} categorizations but {pending} reference {entity_id}"
                )
            removed = self.categorizations.remove_by_master_entity(entity_id)
            self.selection.remove(entity_id)
        logger.info("Removed master entity %s and %d categorizations", entity_id, removed)
        self._audit("selection", entity_id, "remove_master_entity", {"categorizations_removed": removed})
        return removed

    # time shift and drag/drop

    def time_shift(self, ref: EventRef, new_start: datetime, new_end: datetime) -> NormalizedEvent:
        if new_end < new_start:
            raise ValidationError("new end must not be before new start")
        with self.lock:
            view = self.require_view()
            current = view.find(ref)
            if current is None:
                raise ValidationError(f"event {ref} is not part of the current week")
            if not view.week_start <= new_start <= view.week_end:
                raise ValidationError(f"new start {serialize_datetime(new_start)} falls outside the loaded week")
            if ref.is_local:
                updated = self.local_events.update(
                    ref.id, {"start_time": new_start, "end_time": new_end}
                )
                if updated is None:
                    raise ValidationError(f"local event {ref.id} no longer exists")
            else:
                updated = current.with_updates(
                    start_time=new_start,
                    end_time=new_end,
                    duration_minutes=minutes_between(new_start, new_end),
                )
            self._replace_in_view(view, updated)
        self._audit(
            "event",
            str(ref),
            "time_shift",
            {"start": serialize_datetime(new_start), "end": serialize_datetime(new_end)},
        )
        return updated

    def _replace_in_view(self, view: WeekView, updated: NormalizedEvent) -> None:
        events = [event for event in view.events if event.ref != updated.ref]
        unscheduled = [event for event in view.unscheduled if event.ref != updated.ref]
        if updated.is_scheduled:
            events.append(updated)
            events.sort(key=lambda event: event.start_time)
        else:
            unscheduled.append(updated)
        view.events = events
        view.unscheduled = unscheduled

    def begin_drag(self, event: NormalizedEvent) -> DragPayload:
        with self.lock:
            payload = DragPayload(event=event.clone())
            self._active_drag = payload
            return payload

    @property
    def active_drag(self) -> DragPayload | None:
        return self._active_drag

    def cancel_drag(self) -> None:
        with self.lock:
            self._active_drag = None

    def drop(self, payload: DragPayload, target: DropTarget) -> DropOutcome:
        with self.lock:
            self._active_drag = None
            view = self.require_view()
            live = view.find(payload.event.ref)
            if live is None:
                logger.info("Ignored drop of %s: event no longer in the week", payload.event.ref)
                return DropOutcome(applied=False, reason="stale_drag", event=payload.event)

            if isinstance(target, TimeSlot):
                return self._drop_on_time_slot(view, live, target)
            if isinstance(target, MasterEntityCard):
                entity = self.find_master_entity(target.master_entity_id)
                if entity is None:
                    return DropOutcome(applied=False, reason="unknown_master_entity", event=live)
                categorization = self.categorize(live, entity)
                return DropOutcome(applied=True, reason="categorized", event=live, categorization=categorization)
            if isinstance(target, PersonalPanel):
                removed = self.uncategorize(live.ref)
                return DropOutcome(
                    applied=removed,
                    reason="uncategorized" if removed else "not_categorized",
                    event=live,
                )
        raise ValidationError(f"unsupported drop target: {target!r}")

    def _drop_on_time_slot(self, view: WeekView, event: NormalizedEvent, target: TimeSlot) -> DropOutcome:
        entity = None
        if target.master_entity_id is not None:
            entity = self.find_master_entity(target.master_entity_id)
            if entity is None:
                return DropOutcome(applied=False, reason="unknown_master_entity", event=event)
        try:
            new_start = slot_start(view.week_start, target.day, target.hour)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        new_end = new_start + timedelta(minutes=event.duration_minutes)
        shifted = self.time_shift(event.ref, new_start, new_end)
        if entity is None:
            return DropOutcome(applied=True, reason="time_shifted", event=shifted)
        categorization = self.categorize(shifted, entity)
        return DropOutcome(
            applied=True,
            reason="time_shifted_and_categorized",
            event=shifted,
            categorization=categorization,
        )

    # session wipe

    def preview_clear(self) -> ClearReport:
        return ClearReport(
            local_events=self.local_events.count(),
            categorizations=self.categorizations.count(),
        )

    def clear_local_operations(self) -> ClearReport:
        with self.lock:
            report = self.preview_clear()
            with self.local_events.session.lock:
                self.local_events.clear()
                self.categorizations.clear()
            self.rebuild_view()
        logger.info(
            "Cleared %d local events and %d categorizations", report.local_events, report.categorizations
        )
        self._audit("session", "local", "clear_local_operations", report.to_dict())
        return report
