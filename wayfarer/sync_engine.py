from __future__ import annotations

import logging
import threading
import time
import traceback
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator

from wayfarer.caldav_client import CalDAVCalendarSource, CalendarSource
from wayfarer.clock import Clock, SystemClock
from wayfarer.config_manager import ConfigManager
from wayfarer.errors import GeocodeError, InvalidRange, NoEventsFound, SyncError, SyncInProgress
from wayfarer.geocoding import Geocoder, NominatimGeocoder, attempt_geocoding, needs_geocoding_retry, rearm
from wayfarer.models import (
    AppConfig,
    ExternalEvent,
    GeocodingStatus,
    Location,
    SyncProgress,
    SyncResult,
    SyncStatus,
    day_window,
    serialize_datetime,
)
from wayfarer.reconciler import PlannedCreate, PlannedUpdate, plan
from wayfarer.state_store import StateStore, StoreSession

logger = logging.getLogger(__name__)

UNTITLED_EVENT = "Untitled Event"
RETRYABLE = {GeocodingStatus.PENDING, GeocodingStatus.RETRY_LATER}


class SingleFlight:
    """Non-blocking mutual exclusion: a second entrant fails instead of waiting."""

    def __init__(self) -> None:
        self._lock = threading.Lock()

    @property
    def busy(self) -> bool:
        return self._lock.locked()

    @contextmanager
    def hold(self) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise SyncInProgress()
        try:
            yield
        finally:
            self._lock.release()


PROCESS_SYNC_GUARD = SingleFlight()


def _overlaps_window(start: datetime, end: datetime) -> Callable[[Location], bool]:
    """Same half-open overlap a CalDAV time-range query applies (RFC 4791 9.9).

    A record ending exactly at ``start`` is outside; a zero-length record at
    ``start`` is inside.
    """

    def predicate(location: Location) -> bool:
        if location.start_time >= end:
            return False
        return location.end_time > start or location.start_time >= start

    return predicate


def _event_name(event: ExternalEvent) -> str:
    return (event.title or "").strip() or UNTITLED_EVENT


class _Run:
    """Collaborators, counters and deferred audit entries of one sync invocation."""

    def __init__(
        self,
        *,
        config: AppConfig,
        clock: Clock,
        geocoder: Geocoder,
        session: StoreSession,
        result: SyncResult,
    ) -> None:
        self.config = config
        self.clock = clock
        self.geocoder = geocoder
        self.session = session
        self.result = result
        self.started = time.monotonic()
        self.audit: list[dict[str, Any]] = []

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started

    def audit_event(self, location: Location, action: str, **details: Any) -> None:
        self.audit.append(
            {
                "location_id": location.id,
                "external_event_id": location.external_event_id,
                "action": action,
                "details": {"name": location.name, **details},
            }
        )

    def counts(self) -> dict[str, int]:
        return {
            "created": self.result.new_locations,
            "updated": self.result.updated_locations,
            "deleted": self.result.deleted_locations,
            "skipped": self.result.skipped_locations,
            "geocoding_failures": self.result.geocoding_failures,
            "errors": len(self.result.errors),
        }


class SyncEngine:
    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        calendar_source: CalendarSource | None = None,
        geocoder: Geocoder | None = None,
        clock: Clock | None = None,
        guard: SingleFlight | None = None,
        progress_callback: Callable[[SyncProgress], None] | None = None,
    ) -> None:
        self.config_manager = config_manager
        self.state_store = state_store
        self.calendar_source = calendar_source
        self.geocoder = geocoder
        self.clock = clock
        self.guard = guard or PROCESS_SYNC_GUARD
        self.progress_callback = progress_callback
        self.last_progress: SyncProgress | None = None

    @property
    def is_syncing(self) -> bool:
        return self.guard.busy

    def _clock(self, config: AppConfig) -> Clock:
        return self.clock or SystemClock(config.sync.timezone)

    def sync_today(self, trigger: str = "manual") -> SyncResult:
        config = self.config_manager.load()
        start, end = day_window(self._clock(config).now())
        return self.sync(start, end, trigger=trigger)

    def sync_configured_window(self, trigger: str = "scheduled") -> SyncResult:
        config = self.config_manager.load()
        start, end = day_window(self._clock(config).now(), config.sync.window_days)
        return self.sync(start, end, trigger=trigger)

    def sync(self, window_start: datetime, window_end: datetime, trigger: str = "manual") -> SyncResult:
        if window_start >= window_end:
            raise InvalidRange()
        with self.guard.hold():
            return self._sync_locked(window_start, window_end, trigger)

    def _report(
        self,
        step: str,
        progress: float,
        processed: int = 0,
        total: int = 0,
        item: str | None = None,
    ) -> None:
        previous = self.last_progress.progress if self.last_progress else 0.0
        snapshot = SyncProgress(
            current_step=step,
            progress=max(previous, min(1.0, progress)),
            items_processed=processed,
            total_items=total,
            current_item=item,
        )
        self.last_progress = snapshot
        if self.progress_callback is None:
            return
        try:
            self.progress_callback(snapshot)
        except Exception:
            logger.exception("Progress callback failed at step %r", step)

    def _sync_locked(self, window_start: datetime, window_end: datetime, trigger: str) -> SyncResult:
        config = self.config_manager.load()
        source = self.calendar_source or CalDAVCalendarSource(config.caldav)
        self.last_progress = None
        run_id = self.state_store.start_sync_run(trigger=trigger)
        run = _Run(
            config=config,
            clock=self._clock(config),
            geocoder=self.geocoder or NominatimGeocoder(config.geocoder),
            session=self.state_store.session(),
            result=SyncResult(window_start=window_start, window_end=window_end, trigger=trigger, run_id=run_id),
        )
        logger.info(
            "Starting sync for %s to %s (trigger=%s)",
            serialize_datetime(window_start),
            serialize_datetime(window_end),
            trigger,
        )
        try:
            self._report("Fetching calendar events", 0.05)
            events = [event for event in source.fetch_events(window_start, window_end) if event.has_location]
            run.result.total_events = len(events)
            logger.info("Found %d calendar events with locations", len(events))
            if not events:
                run.result.errors.append(NoEventsFound())
                return self._finish(run)

            self._report("Loading existing locations", 0.15)
            stored = run.session.fetch()
            stored_by_event_id = {loc.external_event_id: loc for loc in stored if loc.external_event_id}
            in_window = _overlaps_window(window_start, window_end)
            existing = [loc for loc in stored if in_window(loc) and loc.sync_status != SyncStatus.DELETED]

            self._report("Planning changes", 0.2)
            reconcile = plan(existing, events)
            for rejection in reconcile.rejected:
                run.result.errors.append(rejection)
                run.audit.append(
                    {
                        "location_id": "",
                        "external_event_id": rejection.event_id,
                        "action": "event_rejected",
                        "details": {"reason": rejection.reason},
                    }
                )

            total = reconcile.action_count
            processed = 0

            def step_done(label: str) -> None:
                nonlocal processed
                processed += 1
                self._report("Processing events", 0.2 + 0.7 * processed / total, processed, total, label)

            for planned_create in reconcile.to_create:
                self._apply_create(run, planned_create, stored_by_event_id.get(planned_create.event.id))
                step_done(_event_name(planned_create.event))
            for planned_update in reconcile.to_update:
                self._apply_update(run, planned_update)
                step_done(_event_name(planned_update.event))
            for location in reconcile.to_delete:
                self._apply_delete(run, location)
                step_done(location.name)
            for location in reconcile.unchanged:
                run.result.skipped_locations += 1
                if config.geocoder.retry_on_sync:
                    self._retry_geocoding(run, location)
                step_done(location.name)

            self._report("Saving changes", 0.95)
            run.session.save()
            return self._finish(run)
        except Exception as exc:
            run.session.rollback()
            self._fail(run, exc)
            raise

    def _geocode(self, run: _Run, location: Location) -> None:
        if attempt_geocoding(
            location,
            run.geocoder,
            now=run.clock.now(),
            max_attempts=run.config.geocoder.max_attempts,
        ):
            return
        if location.geocoding_status not in {GeocodingStatus.RETRY_LATER, GeocodingStatus.FAILED}:
            return
        run.result.geocoding_failures += 1
        run.audit_event(
            location,
            "geocoding_failed",
            address=location.address,
            status=location.geocoding_status.value,
            attempts=location.geocoding_attempts,
        )
        if location.geocoding_status == GeocodingStatus.FAILED:
            run.result.errors.append(GeocodeError(location.address or "", "attempts exhausted"))

    def _apply_create(self, run: _Run, planned: PlannedCreate, stored: Location | None) -> None:
        event = planned.event
        now = run.clock.now()
        if stored is not None:
            # The event id already belongs to a soft-deleted or out-of-window record: revive it.
            location = stored.clone()
            if location.address != event.location_text:
                location.address = event.location_text
                rearm(location)
        else:
            location = Location(
                name=_event_name(event),
                address=event.location_text,
                start_time=event.start_time,
                end_time=event.end_time,
                external_event_id=event.id,
                geocoding_status=GeocodingStatus.PENDING,
                geocoding_attempts=0,
            )
        location.name = _event_name(event)
        location.start_time = event.start_time
        location.end_time = event.end_time
        location.sync_status = SyncStatus.SYNCED
        location.last_local_modification_date = now
        location.last_sync_date = now
        location.change_fingerprint = planned.fingerprint

        if location.geocoding_status in RETRYABLE:
            self._geocode(run, location)
        run.session.insert(location)
        run.result.new_locations += 1
        run.audit_event(
            location,
            "create_location",
            address=location.address,
            revived=stored is not None,
            geocoding_status=location.geocoding_status.value,
        )
        logger.debug("Created location %r (%s)", location.name, location.id)

    def _apply_update(self, run: _Run, planned: PlannedUpdate) -> None:
        event = planned.event
        location = planned.location.clone()
        now = run.clock.now()
        previous_address = location.address

        location.name = _event_name(event)
        location.start_time = event.start_time or location.start_time
        location.end_time = event.end_time or location.end_time
        location.sync_status = SyncStatus.SYNCED
        location.last_local_modification_date = now
        location.last_sync_date = now
        location.change_fingerprint = planned.fingerprint

        address_changed = previous_address != event.location_text
        if address_changed:
            logger.debug("Address changed for %r, re-geocoding %r", location.name, event.location_text)
            location.address = event.location_text
            rearm(location)
            self._geocode(run, location)

        run.session.insert(location)
        run.result.updated_locations += 1
        run.audit_event(
            location,
            "update_location",
            address_changed=address_changed,
            previous_address=previous_address,
        )

    def _apply_delete(self, run: _Run, location: Location) -> None:
        deleted = location.with_updates(
            sync_status=SyncStatus.DELETED,
            last_local_modification_date=run.clock.now(),
        )
        run.session.insert(deleted)
        run.result.deleted_locations += 1
        run.audit_event(deleted, "soft_delete_location", reason="event_missing_from_source")

    def _retry_geocoding(self, run: _Run, location: Location) -> None:
        if not needs_geocoding_retry(location, run.clock.now(), run.config.geocoder.retry_delay_seconds):
            return
        retried = location.clone()
        self._geocode(run, retried)
        run.session.insert(retried)

    def _finish(self, run: _Run) -> SyncResult:
        result = run.result
        result.duration_seconds = run.elapsed
        result.sync_date = run.clock.now()
        self._report("Completed", 1.0, result.total_events, result.total_events)
        self.state_store.finish_sync_run(
            run_id=result.run_id,
            status="success" if result.is_success else "partial",
            message=result.summary,
            duration_ms=int(result.duration_seconds * 1000),
            counts=run.counts(),
        )
        self.state_store.record_audit_events(run.audit, run_id=result.run_id)
        logger.info("%s", result.summary)
        return result

    def _fail(self, run: _Run, exc: Exception) -> None:
        error_message = str(exc) if isinstance(exc, SyncError) else f"{type(exc).__name__}: {exc}"
        logger.error("Sync failed after %.2fs: %s", run.elapsed, error_message)
        self.state_store.finish_sync_run(
            run_id=run.result.run_id,
            status="error",
            message=error_message,
            duration_ms=int(run.elapsed * 1000),
            counts=run.counts(),
        )
        self.state_store.record_audit_event(
            location_id="system",
            action="run_error",
            run_id=run.result.run_id,
            details={
                "trigger": run.result.trigger,
                "error": error_message,
                "traceback": traceback.format_exc(limit=5),
            },
        )
