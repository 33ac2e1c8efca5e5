from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Any, Iterator, Literal

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from coursetally.cache import EnvelopeCache, MasterEntityCache, WeeklyEventCache
from coursetally.calendar_client import build_calendar_provider
from coursetally.categorization import CategorizationStore
from coursetally.config_manager import MASK, SECRET_FIELDS, ConfigManager
from coursetally.errors import (
    AuthRequired,
    CoursetallyError,
    ProviderError,
    SubmissionError,
    ValidationError,
)
from coursetally.identity import StaticIdentity
from coursetally.ledger_client import AppsScriptLedger
from coursetally.local_events import LocalEventStore
from coursetally.models import (
    AppConfig,
    DragPayload,
    DropTarget,
    EventRef,
    MasterEntityCard,
    PersonalPanel,
    TimeSlot,
    WeekView,
)
from coursetally.reconciler import ReconciliationController
from coursetally.reference_client import SheetsMasterEntityProvider
from coursetally.refresh import RefreshOrchestrator
from coursetally.scheduler import RefreshScheduler
from coursetally.selection import PanelLayout, SelectionStore
from coursetally.session import SessionStore
from coursetally.state_store import StateStore
from coursetally.submission import SubmissionService
from coursetally.week import week_id, week_label


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class RefreshRequest(BaseModel):
    offset: int | None = None
    force: bool = True


class LocalEventCreate(BaseModel):
    title: str = Field(min_length=1, max_length=500)
    description: str = ""
    location: str = ""
    start_time: str | None = None
    end_time: str | None = None
    duration_minutes: int | None = None


class LocalEventPatch(BaseModel):
    title: str | None = None
    description: str | None = None
    location: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    duration_minutes: int | None = None


class EventRefModel(BaseModel):
    kind: Literal["remote", "local"]
    id: str = Field(min_length=1)


class DropTargetModel(BaseModel):
    type: Literal["time_slot", "master_entity", "personal_panel"]
    day: int | None = None
    hour: int | None = None
    master_entity_id: str | None = None


class DropRequest(BaseModel):
    event: EventRefModel
    target: DropTargetModel


class LayoutRequest(BaseModel):
    panel_left_width: int


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.session = SessionStore()
        self.local_events = LocalEventStore(self.session)
        self.categorizations = CategorizationStore(self.session)
        self.selection = SelectionStore(self.state_store)
        self.layout = PanelLayout(self.state_store)
        self.controller = ReconciliationController(
            self.local_events, self.categorizations, self.selection, self.state_store
        )

        config = self.config_manager.load()
        identity = StaticIdentity(config.identity)
        envelopes = EnvelopeCache(self.state_store)
        self.ledger = AppsScriptLedger(config.ledger, identity)
        self.master_entities = MasterEntityCache(
            SheetsMasterEntityProvider(config.reference, identity),
            envelopes,
            config.cache.master_entities_ttl_minutes,
        )
        self.weekly_events = WeeklyEventCache(envelopes, config.cache.weekly_events_ttl_minutes)
        self.orchestrator = RefreshOrchestrator(
            self.controller,
            build_calendar_provider(config.calendar, identity),
            self.master_entities,
            self.weekly_events,
            self.selection,
            self.ledger,
            config.week,
            self.state_store,
        )
        self.submissions = SubmissionService(self.categorizations, self.ledger, self.state_store)
        self.scheduler = RefreshScheduler(self.orchestrator, self.config_manager)

    def apply_config(self, config: AppConfig) -> None:
        """Point every client at the new settings; stores and caches are kept."""
        identity = StaticIdentity(config.identity)
        self.ledger = AppsScriptLedger(config.ledger, identity)
        self.master_entities.provider = SheetsMasterEntityProvider(config.reference, identity)
        self.master_entities.ttl_minutes = config.cache.master_entities_ttl_minutes
        self.weekly_events.ttl_minutes = config.cache.weekly_events_ttl_minutes
        self.orchestrator.calendar = build_calendar_provider(config.calendar, identity)
        self.orchestrator.ledger = self.ledger
        self.orchestrator.week_config = config.week
        self.submissions.ledger = self.ledger


@contextmanager
def _mapped_errors() -> Iterator[None]:
    try:
        yield
    except AuthRequired as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except (ProviderError, SubmissionError) as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    except CoursetallyError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    for section_name, key in SECRET_FIELDS:
        section = sanitized.get(section_name)
        if not isinstance(section, dict):
            continue
        section = dict(section)
        value = section.get(key)
        if value is not None and str(value).strip() in {"", MASK}:
            if str(current.get(section_name, {}).get(key, "")):
                section.pop(key, None)
            else:
                section[key] = ""
        if section:
            sanitized[section_name] = section
        else:
            sanitized.pop(section_name, None)
    return sanitized


def _drop_target(model: DropTargetModel) -> DropTarget:
    if model.type == "time_slot":
        if model.day is None or model.hour is None:
            raise ValidationError("time_slot target needs day and hour")
        return TimeSlot(day=model.day, hour=model.hour, master_entity_id=model.master_entity_id)
    if model.type == "master_entity":
        if not model.master_entity_id:
            raise ValidationError("master_entity target needs master_entity_id")
        return MasterEntityCard(master_entity_id=model.master_entity_id)
    return PersonalPanel()


def _week_payload(context: AppContext, view: WeekView) -> dict[str, Any]:
    return {
        "label": week_label(view.offset),
        "week_id": week_id(view.week_start),
        "view": view.to_dict(),
        "categorizations": [item.to_dict() for item in context.categorizations.list_all()],
    }


def create_app() -> FastAPI:
    config_path = os.getenv("COURSETALLY_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("COURSETALLY_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Coursetally", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        if app.state.context.config_manager.load().refresh.enabled:
            app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        updated = app.state.context.config_manager.update(sanitized_payload)
        app.state.context.apply_config(updated)
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/week")
    def get_week(offset: int | None = None) -> dict[str, Any]:
        ctx = app.state.context
        if offset is None:
            offset = ctx.config_manager.load().week.default_offset
        report = None
        view = ctx.controller.view
        if view is None or view.offset != offset:
            report = ctx.orchestrator.refresh(offset, force=False)
            view = ctx.controller.view
        if view is None or view.offset != offset:
            events_report = report.sources.get("events") if report is not None else None
            if events_report is not None and events_report.error == AuthRequired.__name__:
                raise HTTPException(status_code=401, detail=events_report.message)
            detail = events_report.message if events_report is not None else "week could not be loaded"
            raise HTTPException(status_code=502, detail=detail)
        payload = _week_payload(ctx, view)
        payload["refresh"] = report.to_dict() if report is not None else None
        return payload

    @app.post("/api/refresh")
    def refresh(request: RefreshRequest) -> dict[str, Any]:
        ctx = app.state.context
        offset = request.offset
        if offset is None:
            view = ctx.controller.view
            offset = view.offset if view is not None else ctx.config_manager.load().week.default_offset
        report = ctx.orchestrator.refresh(offset, force=request.force)
        return report.to_dict()

    @app.post("/api/local-events")
    def create_local_event(request: LocalEventCreate) -> dict[str, Any]:
        with _mapped_errors():
            event = app.state.context.controller.create_local_event(request.model_dump())
        return {"event": event.to_dict()}

    @app.patch("/api/local-events/{event_id}")
    def update_local_event(event_id: str, request: LocalEventPatch) -> dict[str, Any]:
        fields = request.model_dump(exclude_unset=True)
        with _mapped_errors():
            event = app.state.context.controller.update_local_event(event_id, fields)
        if event is None:
            raise HTTPException(status_code=404, detail="local event not found")
        return {"event": event.to_dict()}

    @app.delete("/api/local-events/{event_id}")
    def delete_local_event(event_id: str) -> dict[str, Any]:
        if not app.state.context.controller.delete_local_event(event_id):
            raise HTTPException(status_code=404, detail="local event not found")
        return {"message": "local event deleted"}

    @app.post("/api/drop")
    def drop(request: DropRequest) -> dict[str, Any]:
        controller = app.state.context.controller
        with _mapped_errors():
            target = _drop_target(request.target)
            view = controller.require_view()
            ref = EventRef(kind=request.event.kind, id=request.event.id)
            live = view.find(ref)
            if live is None:
                return {"applied": False, "reason": "stale_drag", "event": None, "categorization": None}
            payload: DragPayload = controller.begin_drag(live)
            outcome = controller.drop(payload, target)
        return {
            "applied": outcome.applied,
            "reason": outcome.reason,
            "event": outcome.event.to_dict() if outcome.event is not None else None,
            "categorization": outcome.categorization.to_dict() if outcome.categorization is not None else None,
        }

    @app.delete("/api/categorizations/{kind}/{event_id}")
    def uncategorize(kind: str, event_id: str) -> dict[str, Any]:
        with _mapped_errors():
            try:
                ref = EventRef(kind=kind, id=event_id)
            except ValueError as exc:
                raise ValidationError(str(exc)) from exc
            removed = app.state.context.controller.uncategorize(ref)
        if not removed:
            raise HTTPException(status_code=404, detail="categorization not found")
        return {"message": "categorization removed"}

    @app.get("/api/master-entities")
    def list_master_entities() -> dict[str, Any]:
        ctx = app.state.context
        entities = ctx.controller.master_entities()
        if not entities:
            with _mapped_errors():
                entities = ctx.master_entities.get()
            ctx.controller.set_master_entities(entities)
        return {"master_entities": [entity.to_dict() for entity in entities]}

    @app.get("/api/selection")
    def get_selection() -> dict[str, Any]:
        ctx = app.state.context
        selected = ctx.selection.list_selected()
        entities = []
        for entity_id in selected:
            entity = ctx.controller.find_master_entity(entity_id)
            entities.append(
                {
                    "id": entity_id,
                    "title": entity.title if entity is not None else "",
                    "categorizations": ctx.controller.pending_removal_count(entity_id),
                }
            )
        return {"selected": entities, "dirty": ctx.selection.is_dirty()}

    @app.post("/api/selection/{entity_id}/toggle")
    def toggle_selection(entity_id: str) -> dict[str, Any]:
        ctx = app.state.context
        pending = ctx.controller.pending_removal_count(entity_id)
        if ctx.selection.contains(entity_id) and pending:
            raise HTTPException(
                status_code=409,
                detail=f"{pending} categorizations reference {entity_id}; confirm removal first",
            )
        selected = ctx.selection.toggle(entity_id)
        return {"master_entity_id": entity_id, "selected": selected}

    @app.get("/api/selection/{entity_id}/removal")
    def removal_preview(entity_id: str) -> dict[str, Any]:
        ctx = app.state.context
        affected = ctx.categorizations.by_master_entity(entity_id)
        return {
            "master_entity_id": entity_id,
            "pending_count": len(affected),
            "categorizations": [item.to_dict() for item in affected],
        }

    @app.delete("/api/selection/{entity_id}")
    def remove_selection(entity_id: str, confirmed_count: int = 0) -> dict[str, Any]:
        with _mapped_errors():
            removed = app.state.context.controller.remove_master_entity(entity_id, confirmed_count)
        return {"master_entity_id": entity_id, "categorizations_removed": removed}

    @app.get("/api/session/clear")
    def preview_clear() -> dict[str, Any]:
        return app.state.context.controller.preview_clear().to_dict()

    @app.post("/api/session/clear")
    def clear_session() -> dict[str, Any]:
        report = app.state.context.controller.clear_local_operations()
        return {"message": "local operations cleared", "cleared": report.to_dict()}

    @app.get("/api/export")
    def export_records() -> dict[str, Any]:
        ctx = app.state.context
        with _mapped_errors():
            view = ctx.controller.require_view()
            records = ctx.submissions.preview(view)
        return {
            "week_id": week_id(view.week_start),
            "records": [record.to_payload() for record in records],
        }

    @app.post("/api/submit")
    def submit() -> dict[str, Any]:
        ctx = app.state.context
        with _mapped_errors():
            result = ctx.submissions.submit(ctx.controller.require_view())
        return {"message": "submitted", "result": result.to_dict()}

    @app.get("/api/submissions")
    def submissions(limit: int = 20, week: str | None = None) -> dict[str, Any]:
        ctx = app.state.context
        payload: dict[str, Any] = {"runs": ctx.submissions.recent_runs(limit=limit)}
        if week:
            with _mapped_errors():
                payload["ledger_records"] = ctx.submissions.submitted_records(week)
        return payload

    @app.get("/api/layout")
    def get_layout() -> dict[str, int]:
        return {"panel_left_width": app.state.context.layout.get_width()}

    @app.put("/api/layout")
    def put_layout(request: LayoutRequest) -> dict[str, int]:
        return {"panel_left_width": app.state.context.layout.set_width(request.panel_left_width)}

    @app.get("/api/audit")
    def audit_events(limit: int = 100, action: str | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, action=action)}

    return app


app = create_app()
