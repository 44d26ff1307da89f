from __future__ import annotations

import os
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from calsync.caldav_client import CalendarFetchError
from calsync.config_manager import ConfigManager
from calsync.feed_source import FeedSource
from calsync.models import Event, parse_iso_datetime
from calsync.scheduler import SyncScheduler
from calsync.state_store import StateStore
from calsync.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class EventPayload(BaseModel):
    title: str
    start: str
    end: str
    location: str = ""
    description: str = ""
    source_id: str = Field(min_length=1)


class PreviewRequest(BaseModel):
    events: list[EventPayload] | None = None


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store)
        self.scheduler = SyncScheduler(self.sync_engine)


def _event_from_payload(payload: EventPayload) -> Event:
    start = parse_iso_datetime(payload.start)
    end = parse_iso_datetime(payload.end)
    if start is None or end is None:
        raise ValueError(f"Event {payload.source_id} needs start and end")
    if end < start:
        raise ValueError(f"Event {payload.source_id} ends before it starts")
    return Event(
        title=payload.title,
        start=start,
        end=end,
        location=payload.location,
        description=payload.description,
        source_id=payload.source_id,
    )


def create_app() -> FastAPI:
    config_path = os.getenv("CALSYNC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("CALSYNC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Calsync Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
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
        try:
            app.state.context.config_manager.update(request.payload)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        config = app.state.context.config_manager.load()
        service = app.state.context.sync_engine.service_for(config)
        try:
            calendars = service.list_calendars()
        except Exception as exc:
            raise HTTPException(status_code=502, detail=f"{type(exc).__name__}: {exc}") from exc
        return {"calendars": [item.to_dict() for item in calendars]}

    @app.get("/api/events")
    def list_events() -> dict[str, Any]:
        try:
            events = app.state.context.sync_engine.fetch()
        except CalendarFetchError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"events": [event.to_dict() for event in events]}

    @app.post("/api/sync/preview")
    def preview_sync(request: PreviewRequest) -> dict[str, Any]:
        try:
            if request.events is None:
                config = app.state.context.config_manager.load()
                source_events = FeedSource(config.feed).load_events()
            else:
                source_events = [_event_from_payload(item) for item in request.events]
            changes = app.state.context.sync_engine.preview(source_events)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except CalendarFetchError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        return {"summary": str(changes), "changes": changes.to_dict()}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.runs(limit=limit)}

    @app.get("/api/sync/operations")
    def sync_operations(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"operations": app.state.context.state_store.operations(run_id=run_id, limit=limit)}

    return app
