from __future__ import annotations

import os
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from wayfarer.caldav_client import CalDAVCalendarSource
from wayfarer.catalog import LocationCatalog
from wayfarer.clock import SystemClock
from wayfarer.config_manager import MASK, ConfigManager
from wayfarer.errors import (
    AccessDenied,
    CalendarUnavailable,
    InvalidRange,
    LocationNotFound,
    StoreError,
    SyncError,
    SyncInProgress,
)
from wayfarer.models import Coordinate, GeocodingStatus, SyncResult, SyncStatus, parse_iso_datetime
from wayfarer.query import FilterKind, LocationFilter, SortKey, SortOption
from wayfarer.scheduler import SyncScheduler
from wayfarer.state_store import StateStore
from wayfarer.sync_engine import SingleFlight, SyncEngine


ERROR_STATUS = {
    InvalidRange: 400,
    AccessDenied: 403,
    SyncInProgress: 409,
    CalendarUnavailable: 502,
    StoreError: 500,
}
NON_NULLABLE_FIELDS = ("name", "latitude", "longitude", "start_time", "end_time", "is_archived")


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class CustomWindowSyncRequest(BaseModel):
    start: str
    end: str


class LocationUpdateRequest(BaseModel):
    name: str | None = None
    address: str | None = None
    notes: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    start_time: str | None = None
    end_time: str | None = None
    is_archived: bool | None = None


class TagRequest(BaseModel):
    tag: str = Field(min_length=1, max_length=200)


class PurgeRequest(BaseModel):
    days: int = Field(default=30, ge=0)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        config = self.config_manager.load()
        self.guard = SingleFlight()
        self.catalog = LocationCatalog(self.state_store, SystemClock(config.sync.timezone), guard=self.guard)
        self.sync_engine = SyncEngine(self.config_manager, self.state_store, guard=self.guard)
        self.scheduler = SyncScheduler(
            self.sync_engine,
            self.config_manager,
            on_sync_complete=lambda _result: self.catalog.refresh(),
        )


def _http_error(exc: SyncError) -> HTTPException:
    for error_type, status_code in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail=exc.to_dict())
    return HTTPException(status_code=500, detail=exc.to_dict())


def _build_filter(kind: str, value: str | None) -> LocationFilter:
    try:
        filter_kind = FilterKind(kind)
        if filter_kind == FilterKind.BY_TAG:
            if not value:
                raise ValueError("by_tag requires a value")
            return LocationFilter.by_tag(value)
        if filter_kind == FilterKind.BY_GEOCODING_STATUS:
            return LocationFilter.by_geocoding_status(GeocodingStatus(value))
        if filter_kind == FilterKind.BY_SYNC_STATUS:
            return LocationFilter.by_sync_status(SyncStatus(value))
        return LocationFilter(kind=filter_kind)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"invalid filter: {exc}") from exc


def _build_sort(key: str, lat: float | None, lon: float | None) -> SortOption:
    try:
        sort_key = SortKey(key)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"invalid sort: {exc}") from exc
    if sort_key == SortKey.DISTANCE:
        if lat is None or lon is None:
            raise HTTPException(status_code=400, detail="distance sort requires lat and lon")
        return SortOption.distance_from(Coordinate(latitude=lat, longitude=lon))
    return SortOption(key=sort_key)


def create_app() -> FastAPI:
    config_path = os.getenv("WAYFARER_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("WAYFARER_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    app = FastAPI(title="Wayfarer Admin", version="0.1.0")
    app.state.context = context

    @app.on_event("startup")
    def _startup() -> None:
        app.state.context.scheduler.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        app.state.context.scheduler.stop()

    def _run_sync(sync_call: Any) -> dict[str, Any]:
        try:
            result: SyncResult = sync_call()
        except SyncError as exc:
            raise _http_error(exc) from exc
        app.state.context.catalog.refresh()
        return {"message": "sync completed", "result": result.to_dict()}

    def _catalog_call(action: Any, *args: Any) -> Any:
        try:
            return action(*args)
        except LocationNotFound as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except SyncError as exc:
            raise _http_error(exc) from exc

    def _location_action(action: Any, location_id: str, *args: Any) -> dict[str, Any]:
        location = _catalog_call(action, location_id, *args)
        return {"location": location.to_dict()}

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        try:
            updated = app.state.context.config_manager.update(request.payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=f"Invalid config: {exc}") from exc
        config = updated.to_dict()
        if config["caldav"]["password"]:
            config["caldav"]["password"] = MASK
        return {"message": "config updated", "config": config}

    @app.post("/api/sync/run")
    def trigger_sync() -> dict[str, str]:
        app.state.context.scheduler.trigger_manual()
        return {"message": "sync triggered"}

    @app.post("/api/sync/today")
    def sync_today() -> dict[str, Any]:
        return _run_sync(lambda: app.state.context.sync_engine.sync_today(trigger="manual-today"))

    @app.post("/api/sync/run-window")
    def sync_window(request: CustomWindowSyncRequest) -> dict[str, Any]:
        try:
            start = parse_iso_datetime(request.start)
            end = parse_iso_datetime(request.end)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="Invalid start/end datetime") from exc
        if start is None or end is None:
            raise HTTPException(status_code=400, detail="Invalid start/end datetime")
        return _run_sync(lambda: app.state.context.sync_engine.sync(start, end, trigger="manual-window"))

    @app.get("/api/sync/status")
    def sync_status(limit: int = 20) -> dict[str, Any]:
        engine = app.state.context.sync_engine
        progress = engine.last_progress.to_dict() if engine.last_progress else None
        return {
            "syncing": engine.is_syncing,
            "progress": progress,
            "runs": app.state.context.state_store.recent_sync_runs(limit=limit),
        }

    @app.get("/api/sync/progress")
    def sync_progress() -> dict[str, Any]:
        engine = app.state.context.sync_engine
        return {
            "syncing": engine.is_syncing,
            "progress": engine.last_progress.to_dict() if engine.last_progress else None,
        }

    @app.get("/api/audit/events")
    def audit_events(limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {"events": app.state.context.state_store.recent_audit_events(limit=limit, run_id=run_id)}

    @app.get("/api/locations")
    def list_locations(
        filter: str = "all",
        value: str | None = None,
        sort: str = "start_time",
        ascending: bool = True,
        q: str = "",
        lat: float | None = None,
        lon: float | None = None,
    ) -> dict[str, Any]:
        catalog: LocationCatalog = app.state.context.catalog
        locations = catalog.query(_build_filter(filter, value), _build_sort(sort, lat, lon), ascending, q)
        return {
            "locations": [location.to_dict() for location in locations],
            "tags": catalog.available_tags(),
            "counts": catalog.counts(),
        }

    @app.get("/api/locations/{location_id}")
    def get_location(location_id: str) -> dict[str, Any]:
        return _location_action(app.state.context.catalog.get, location_id)

    @app.patch("/api/locations/{location_id}")
    def update_location(location_id: str, request: LocationUpdateRequest) -> dict[str, Any]:
        fields = request.model_dump(exclude_unset=True)
        nulled = sorted(key for key in NON_NULLABLE_FIELDS if key in fields and fields[key] is None)
        if nulled:
            raise HTTPException(status_code=400, detail=f"fields cannot be null: {', '.join(nulled)}")
        for key in ("start_time", "end_time"):
            if key in fields:
                try:
                    fields[key] = parse_iso_datetime(fields[key])
                except ValueError as exc:
                    raise HTTPException(status_code=400, detail=f"invalid {key}") from exc
                if fields[key] is None:
                    raise HTTPException(status_code=400, detail=f"invalid {key}")
        if not fields:
            raise HTTPException(status_code=400, detail="no fields to update")
        catalog: LocationCatalog = app.state.context.catalog
        return _location_action(lambda location_id: catalog.update_location(location_id, **fields), location_id)

    @app.post("/api/locations/{location_id}/tags")
    def add_tag(location_id: str, request: TagRequest) -> dict[str, Any]:
        return _location_action(app.state.context.catalog.add_tag, location_id, request.tag)

    @app.delete("/api/locations/{location_id}/tags/{tag}")
    def remove_tag(location_id: str, tag: str) -> dict[str, Any]:
        return _location_action(app.state.context.catalog.remove_tag, location_id, tag)

    @app.post("/api/locations/{location_id}/archive")
    def archive_location(location_id: str) -> dict[str, Any]:
        return _location_action(app.state.context.catalog.archive, location_id)

    @app.post("/api/locations/{location_id}/unarchive")
    def unarchive_location(location_id: str) -> dict[str, Any]:
        return _location_action(app.state.context.catalog.unarchive, location_id)

    @app.post("/api/locations/{location_id}/restore")
    def restore_location(location_id: str) -> dict[str, Any]:
        return _location_action(app.state.context.catalog.restore, location_id)

    @app.delete("/api/locations/{location_id}")
    def soft_delete_location(location_id: str) -> dict[str, Any]:
        return _location_action(app.state.context.catalog.soft_delete, location_id)

    @app.delete("/api/locations/{location_id}/purge")
    def hard_delete_location(location_id: str) -> dict[str, Any]:
        _catalog_call(app.state.context.catalog.hard_delete, location_id)
        return {"message": "location purged", "id": location_id}

    @app.post("/api/maintenance/purge-deleted")
    def purge_deleted() -> dict[str, Any]:
        return {"removed": _catalog_call(app.state.context.catalog.purge_soft_deleted)}

    @app.post("/api/maintenance/purge-old")
    def purge_old(request: PurgeRequest) -> dict[str, Any]:
        return {"removed": _catalog_call(app.state.context.catalog.purge_old, request.days)}

    @app.post("/api/maintenance/purge-archived")
    def purge_archived(request: PurgeRequest) -> dict[str, Any]:
        return {"removed": _catalog_call(app.state.context.catalog.purge_archived, request.days)}

    @app.get("/api/calendars")
    def list_calendars() -> dict[str, Any]:
        source = CalDAVCalendarSource(app.state.context.config_manager.load().caldav)
        try:
            calendars = source.list_calendars()
        except SyncError as exc:
            raise _http_error(exc) from exc
        return {"calendars": [asdict(calendar) for calendar in calendars]}

    @app.get("/api/locations/by-event/{external_event_id}")
    def locations_for_event(external_event_id: str) -> dict[str, Any]:
        matches = app.state.context.catalog.by_external_event_id(external_event_id)
        if not matches:
            raise HTTPException(status_code=404, detail=f"No location for event: {external_event_id}")
        return {"locations": [location.to_dict() for location in matches]}

    @app.get("/api/storage")
    def storage() -> dict[str, Any]:
        catalog: LocationCatalog = app.state.context.catalog
        return {
            "storage": catalog.storage_info().to_dict(),
            "recommendations": catalog.cleanup_recommendations(),
        }

    return app


app = create_app()
