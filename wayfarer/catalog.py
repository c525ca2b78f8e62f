from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable

from wayfarer import query as location_query
from wayfarer.clock import Clock
from wayfarer.errors import LocationNotFound
from wayfarer.geocoding import rearm
from wayfarer.models import GeocodingStatus, Location, SyncStatus, serialize_datetime
from wayfarer.query import ALL, BY_START_TIME, LocationFilter, SortOption
from wayfarer.state_store import StateStore
from wayfarer.sync_engine import PROCESS_SYNC_GUARD, SingleFlight

logger = logging.getLogger(__name__)

ESTIMATED_BYTES_PER_LOCATION = 500
EDITABLE_FIELDS = {
    "name",
    "address",
    "notes",
    "latitude",
    "longitude",
    "start_time",
    "end_time",
    "tags",
    "is_archived",
}


@dataclass
class StorageInfo:
    total_locations: int
    active_locations: int
    soft_deleted_locations: int
    archived_locations: int
    estimated_bytes: int
    oldest_location_date: datetime | None
    newest_location_date: datetime | None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["oldest_location_date"] = serialize_datetime(self.oldest_location_date)
        payload["newest_location_date"] = serialize_datetime(self.newest_location_date)
        return payload


class LocationCatalog:
    """Read snapshot of the stored locations plus the user-facing edits.

    Every edit runs in its own store session and refreshes the snapshot once
    saved, so queries never see half-applied work. Edits hold the same
    single-flight guard as the sync engine: while a sync runs they raise
    ``SyncInProgress`` instead of racing its session.
    """

    def __init__(self, state_store: StateStore, clock: Clock, guard: SingleFlight | None = None) -> None:
        self.state_store = state_store
        self.clock = clock
        self.guard = guard or PROCESS_SYNC_GUARD
        self._lock = threading.RLock()
        self._snapshot: list[Location] = []
        self.refresh()

    @property
    def snapshot(self) -> list[Location]:
        with self._lock:
            return [location.clone() for location in self._snapshot]

    def refresh(self) -> list[Location]:
        locations = self.state_store.load_locations()
        with self._lock:
            self._snapshot = locations
        logger.debug("Loaded %d locations", len(locations))
        return self.snapshot

    def get(self, location_id: str) -> Location:
        with self._lock:
            for location in self._snapshot:
                if location.id == location_id:
                    return location.clone()
        raise LocationNotFound(location_id)

    def by_external_event_id(self, external_event_id: str) -> list[Location]:
        return [loc for loc in self.snapshot if loc.external_event_id == external_event_id]

    def query(
        self,
        location_filter: LocationFilter = ALL,
        sort: SortOption = BY_START_TIME,
        ascending: bool = True,
        search_text: str = "",
    ) -> list[Location]:
        return location_query.apply(
            self.snapshot,
            location_filter,
            sort,
            ascending,
            search_text,
            now=self.clock.now(),
        )

    def available_tags(self) -> list[str]:
        return location_query.available_tags(self.snapshot)

    def counts(self) -> dict[str, Any]:
        snapshot = self.snapshot
        return {
            "locations": location_query.location_counts(snapshot),
            "geocoding": location_query.geocoding_counts(snapshot),
        }

    def _mutate(self, location_id: str, change: Callable[[Location], None]) -> Location:
        with self.guard.hold():
            session = self.state_store.session()
            location = session.get(location_id)
            if location is None:
                raise LocationNotFound(location_id)
            change(location)
            session.insert(location)
            session.save()
        self.refresh()
        return location

    def _touch_user_edit(self, location: Location) -> None:
        location.last_local_modification_date = self.clock.now()
        location.is_user_modified = True
        if location.sync_status == SyncStatus.SYNCED:
            location.sync_status = SyncStatus.MODIFIED

    def update_location(self, location_id: str, **fields: Any) -> Location:
        unknown = set(fields) - EDITABLE_FIELDS
        if unknown:
            raise ValueError(f"Fields not editable: {', '.join(sorted(unknown))}")

        def change(location: Location) -> None:
            previous_address = location.address
            for key, value in fields.items():
                setattr(location, key, set(value) if key == "tags" else value)
            if "address" in fields and location.address != previous_address:
                rearm(location)
            elif {"latitude", "longitude"} & set(fields):
                # Hand-placed coordinates are never overwritten by the geocoder.
                location.geocoding_status = GeocodingStatus.NOT_NEEDED
            self._touch_user_edit(location)

        updated = self._mutate(location_id, change)
        logger.info("Updated location %r", updated.name)
        return updated

    def set_notes(self, location_id: str, notes: str) -> Location:
        return self.update_location(location_id, notes=notes or None)

    def add_tag(self, location_id: str, tag: str) -> Location:
        tag = tag.strip()
        if not tag:
            return self.get(location_id)

        def change(location: Location) -> None:
            if tag not in location.tags:
                location.tags.add(tag)
                self._touch_user_edit(location)

        return self._mutate(location_id, change)

    def remove_tag(self, location_id: str, tag: str) -> Location:
        def change(location: Location) -> None:
            if tag in location.tags:
                location.tags.discard(tag)
                self._touch_user_edit(location)

        return self._mutate(location_id, change)

    def archive(self, location_id: str) -> Location:
        return self.update_location(location_id, is_archived=True)

    def unarchive(self, location_id: str) -> Location:
        return self.update_location(location_id, is_archived=False)

    def soft_delete(self, location_id: str) -> Location:
        def change(location: Location) -> None:
            location.sync_status = SyncStatus.DELETED
            location.last_local_modification_date = self.clock.now()

        deleted = self._mutate(location_id, change)
        logger.info("Soft deleted location %r", deleted.name)
        return deleted

    def restore(self, location_id: str) -> Location:
        current = self.get(location_id)
        if current.sync_status != SyncStatus.DELETED:
            logger.warning("Attempted to restore location that is not soft-deleted: %r", current.name)
            return current

        def change(location: Location) -> None:
            location.sync_status = SyncStatus.MODIFIED if location.is_user_modified else SyncStatus.SYNCED
            location.last_local_modification_date = self.clock.now()

        restored = self._mutate(location_id, change)
        logger.info("Restored location %r", restored.name)
        return restored

    def hard_delete(self, location_id: str) -> None:
        with self.guard.hold():
            session = self.state_store.session()
            location = session.get(location_id)
            if location is None:
                raise LocationNotFound(location_id)
            session.delete(location)
            session.save()
        self.refresh()
        logger.info("Hard deleted location %r", location.name)

    def _purge(self, predicate: Callable[[Location], bool], label: str) -> int:
        with self.guard.hold():
            session = self.state_store.session()
            doomed = session.fetch(predicate)
            if not doomed:
                logger.info("No %s to clean up", label)
                return 0
            for location in doomed:
                session.delete(location)
            session.save()
        self.refresh()
        logger.info("Hard deleted %d %s", len(doomed), label)
        return len(doomed)

    def purge_soft_deleted(self) -> int:
        return self._purge(lambda loc: loc.sync_status == SyncStatus.DELETED, "soft-deleted locations")

    def purge_old(self, days: int) -> int:
        cutoff = self.clock.now() - timedelta(days=max(0, days))
        return self._purge(
            lambda loc: loc.end_time < cutoff and (loc.sync_status == SyncStatus.DELETED or loc.is_archived),
            f"old locations (older than {days} days)",
        )

    def purge_archived(self, days: int) -> int:
        cutoff = self.clock.now() - timedelta(days=max(0, days))
        return self._purge(
            lambda loc: loc.is_archived and loc.last_local_modification_date < cutoff,
            f"archived locations (older than {days} days)",
        )

    def storage_info(self) -> StorageInfo:
        snapshot = self.snapshot
        starts = sorted(loc.start_time for loc in snapshot)
        return StorageInfo(
            total_locations=len(snapshot),
            active_locations=sum(1 for loc in snapshot if loc.sync_status != SyncStatus.DELETED),
            soft_deleted_locations=sum(1 for loc in snapshot if loc.sync_status == SyncStatus.DELETED),
            archived_locations=sum(1 for loc in snapshot if loc.is_archived),
            estimated_bytes=len(snapshot) * ESTIMATED_BYTES_PER_LOCATION,
            oldest_location_date=starts[0] if starts else None,
            newest_location_date=starts[-1] if starts else None,
        )

    def cleanup_recommendations(self) -> list[str]:
        info = self.storage_info()
        recommendations: list[str] = []
        if info.soft_deleted_locations > 0:
            recommendations.append(f"Clean up {info.soft_deleted_locations} deleted locations")
        if info.archived_locations > 10:
            recommendations.append("Consider cleaning old archived locations")
        if info.total_locations > 1000:
            recommendations.append("Large number of locations - consider cleanup")
        if info.oldest_location_date is not None:
            if (self.clock.now() - info.oldest_location_date).days > 365:
                recommendations.append("Locations older than 1 year found")
        return recommendations
