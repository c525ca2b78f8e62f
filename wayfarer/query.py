from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, time, timedelta
from enum import Enum
from typing import Any, Callable, Iterable

from wayfarer.models import Coordinate, GeocodingStatus, Location, SyncStatus


EARTH_RADIUS_METERS = 6_371_000.0


class FilterKind(str, Enum):
    ALL = "all"
    TODAY = "today"
    UPCOMING = "upcoming"
    PAST = "past"
    WITH_NOTES = "with_notes"
    ARCHIVED = "archived"
    SOFT_DELETED = "soft_deleted"
    BY_TAG = "by_tag"
    BY_GEOCODING_STATUS = "by_geocoding_status"
    BY_SYNC_STATUS = "by_sync_status"


class SortKey(str, Enum):
    START_TIME = "start_time"
    NAME = "name"
    LAST_MODIFIED = "last_modified"
    DISTANCE = "distance"


@dataclass(frozen=True)
class LocationFilter:
    kind: FilterKind = FilterKind.ALL
    tag: str | None = None
    geocoding_status: GeocodingStatus | None = None
    sync_status: SyncStatus | None = None

    @classmethod
    def by_tag(cls, tag: str) -> "LocationFilter":
        return cls(kind=FilterKind.BY_TAG, tag=tag)

    @classmethod
    def by_geocoding_status(cls, status: GeocodingStatus) -> "LocationFilter":
        return cls(kind=FilterKind.BY_GEOCODING_STATUS, geocoding_status=status)

    @classmethod
    def by_sync_status(cls, status: SyncStatus) -> "LocationFilter":
        return cls(kind=FilterKind.BY_SYNC_STATUS, sync_status=status)


@dataclass(frozen=True)
class SortOption:
    key: SortKey = SortKey.START_TIME
    origin: Coordinate | None = None

    @classmethod
    def distance_from(cls, origin: Coordinate) -> "SortOption":
        return cls(key=SortKey.DISTANCE, origin=origin)


ALL = LocationFilter()
BY_START_TIME = SortOption()


def haversine_distance(a: Coordinate, b: Coordinate) -> float:
    """Great-circle distance in metres."""
    lat1, lat2 = math.radians(a.latitude), math.radians(b.latitude)
    d_lat = lat2 - lat1
    d_lon = math.radians(b.longitude - a.longitude)
    h = math.sin(d_lat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(d_lon / 2) ** 2
    return 2 * EARTH_RADIUS_METERS * math.asin(min(1.0, math.sqrt(h)))


def matches_search(location: Location, search_text: str) -> bool:
    needle = search_text.casefold()
    haystacks = [location.name, location.address or "", location.notes or "", *location.tags]
    return any(needle in value.casefold() for value in haystacks)


def _local_day_bounds(now: datetime) -> tuple[datetime, datetime]:
    start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
    return start, start + timedelta(days=1)


def _filter_predicate(location_filter: LocationFilter, now: datetime) -> Callable[[Location], bool]:
    kind = location_filter.kind

    def active(location: Location) -> bool:
        return location.sync_status != SyncStatus.DELETED

    if kind == FilterKind.ALL:
        return active
    if kind == FilterKind.TODAY:
        day_start, day_end = _local_day_bounds(now)
        return lambda loc: active(loc) and loc.start_time >= now and day_start <= loc.start_time < day_end
    if kind == FilterKind.UPCOMING:
        return lambda loc: active(loc) and loc.start_time > now
    if kind == FilterKind.PAST:
        return lambda loc: active(loc) and loc.end_time < now
    if kind == FilterKind.WITH_NOTES:
        return lambda loc: active(loc) and bool((loc.notes or "").strip())
    if kind == FilterKind.ARCHIVED:
        return lambda loc: active(loc) and loc.is_archived
    if kind == FilterKind.SOFT_DELETED:
        return lambda loc: loc.sync_status == SyncStatus.DELETED
    if kind == FilterKind.BY_TAG:
        return lambda loc: active(loc) and location_filter.tag in loc.tags
    if kind == FilterKind.BY_GEOCODING_STATUS:
        return lambda loc: active(loc) and loc.geocoding_status == location_filter.geocoding_status
    if kind == FilterKind.BY_SYNC_STATUS:
        return lambda loc: loc.sync_status == location_filter.sync_status
    raise ValueError(f"Unsupported filter: {kind}")


def _sort_key(sort: SortOption) -> Callable[[Location], Any]:
    if sort.key == SortKey.START_TIME:
        return lambda loc: loc.start_time
    if sort.key == SortKey.NAME:
        return lambda loc: loc.name.casefold()
    if sort.key == SortKey.LAST_MODIFIED:
        return lambda loc: loc.last_local_modification_date
    if sort.key == SortKey.DISTANCE:
        if sort.origin is None:
            raise ValueError("Distance sort requires an origin coordinate")
        origin = sort.origin
        return lambda loc: haversine_distance(origin, loc.coordinate)
    raise ValueError(f"Unsupported sort key: {sort.key}")


def apply(
    locations: Iterable[Location],
    location_filter: LocationFilter = ALL,
    sort: SortOption = BY_START_TIME,
    ascending: bool = True,
    search_text: str = "",
    *,
    now: datetime,
) -> list[Location]:
    """Search, filter and sort a snapshot without touching it.

    ``sorted`` keeps equal keys in input order for both directions.
    """
    selected = list(locations)
    if search_text:
        selected = [loc for loc in selected if matches_search(loc, search_text)]
    predicate = _filter_predicate(location_filter, now)
    selected = [loc for loc in selected if predicate(loc)]
    return sorted(selected, key=_sort_key(sort), reverse=not ascending)


def available_tags(locations: Iterable[Location]) -> list[str]:
    tags: set[str] = set()
    for location in locations:
        tags.update(location.tags)
    return sorted(tags)


def location_counts(locations: Iterable[Location]) -> dict[str, int]:
    items = list(locations)
    return {
        "total": len(items),
        "active": sum(1 for loc in items if loc.sync_status != SyncStatus.DELETED),
        "synced": sum(1 for loc in items if loc.sync_status == SyncStatus.SYNCED),
        "pending": sum(1 for loc in items if loc.sync_status == SyncStatus.PENDING),
        "errors": sum(1 for loc in items if loc.sync_status == SyncStatus.ERROR),
        "soft_deleted": sum(1 for loc in items if loc.sync_status == SyncStatus.DELETED),
    }


def geocoding_counts(locations: Iterable[Location]) -> dict[str, int]:
    counts = {status.value: 0 for status in GeocodingStatus}
    for location in locations:
        counts[location.geocoding_status.value] += 1
    return counts
