from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field, replace
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any


class SyncStatus(str, Enum):
    PENDING = "pending"
    SYNCED = "synced"
    MODIFIED = "modified"
    DELETED = "deleted"
    ERROR = "error"


class GeocodingStatus(str, Enum):
    NOT_NEEDED = "not_needed"
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    RETRY_LATER = "retry_later"


DEFAULT_MAX_GEOCODING_ATTEMPTS = 3
DEFAULT_GEOCODING_RETRY_DELAY_SECONDS = 2.0


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    parsed = datetime.fromisoformat(text)
    return _ensure_tz(parsed)


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def date_to_datetime(value: datetime | date | None, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _ensure_tz(value)
    if is_end:
        return datetime.combine(value, time.max, tzinfo=timezone.utc)
    return datetime.combine(value, time.min, tzinfo=timezone.utc)


def new_location_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def to_dict(self) -> dict[str, float]:
        return {"latitude": self.latitude, "longitude": self.longitude}


@dataclass
class ExternalEvent:
    id: str
    title: str = ""
    location_text: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    notes: str | None = None
    calendar_id: str = ""

    @property
    def has_location(self) -> bool:
        return bool((self.location_text or "").strip())

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start_time"] = serialize_datetime(self.start_time)
        payload["end_time"] = serialize_datetime(self.end_time)
        return payload


@dataclass
class Location:
    name: str
    start_time: datetime
    end_time: datetime
    id: str = field(default_factory=new_location_id)
    address: str | None = None
    latitude: float = 0.0
    longitude: float = 0.0
    external_event_id: str | None = None
    sync_status: SyncStatus = SyncStatus.PENDING
    last_local_modification_date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_sync_date: datetime | None = None
    is_user_modified: bool = False
    change_fingerprint: str | None = None
    notes: str | None = None
    tags: set[str] = field(default_factory=set)
    is_archived: bool = False
    geocoding_status: GeocodingStatus = GeocodingStatus.PENDING
    geocoding_attempts: int = 0
    last_geocoding_attempt: datetime | None = None

    @property
    def coordinate(self) -> Coordinate:
        return Coordinate(latitude=self.latitude, longitude=self.longitude)

    @property
    def is_soft_deleted(self) -> bool:
        return self.sync_status == SyncStatus.DELETED

    def clone(self) -> "Location":
        return replace(self, tags=set(self.tags))

    def with_updates(self, **kwargs: Any) -> "Location":
        copied = self.clone()
        for key, value in kwargs.items():
            setattr(copied, key, value)
        return copied

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "address": self.address,
            "latitude": self.latitude,
            "longitude": self.longitude,
            "start_time": serialize_datetime(self.start_time),
            "end_time": serialize_datetime(self.end_time),
            "external_event_id": self.external_event_id,
            "sync_status": self.sync_status.value,
            "last_local_modification_date": serialize_datetime(self.last_local_modification_date),
            "last_sync_date": serialize_datetime(self.last_sync_date),
            "is_user_modified": self.is_user_modified,
            "change_fingerprint": self.change_fingerprint,
            "notes": self.notes,
            "tags": sorted(self.tags),
            "is_archived": self.is_archived,
            "geocoding_status": self.geocoding_status.value,
            "geocoding_attempts": self.geocoding_attempts,
            "last_geocoding_attempt": serialize_datetime(self.last_geocoding_attempt),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Location":
        return cls(
            id=str(data.get("id") or new_location_id()),
            name=str(data.get("name", "")),
            address=data.get("address"),
            latitude=float(data.get("latitude") or 0.0),
            longitude=float(data.get("longitude") or 0.0),
            start_time=parse_iso_datetime(data.get("start_time")),
            end_time=parse_iso_datetime(data.get("end_time")),
            external_event_id=data.get("external_event_id"),
            sync_status=SyncStatus(data.get("sync_status") or SyncStatus.PENDING.value),
            last_local_modification_date=parse_iso_datetime(data.get("last_local_modification_date"))
            or datetime.now(timezone.utc),
            last_sync_date=parse_iso_datetime(data.get("last_sync_date")),
            is_user_modified=bool(data.get("is_user_modified", False)),
            change_fingerprint=data.get("change_fingerprint"),
            notes=data.get("notes"),
            tags={str(tag) for tag in data.get("tags") or [] if str(tag).strip()},
            is_archived=bool(data.get("is_archived", False)),
            geocoding_status=GeocodingStatus(data.get("geocoding_status") or GeocodingStatus.PENDING.value),
            geocoding_attempts=max(0, int(data.get("geocoding_attempts") or 0)),
            last_geocoding_attempt=parse_iso_datetime(data.get("last_geocoding_attempt")),
        )


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    calendar_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            calendar_ids=[str(x).strip() for x in data.get("calendar_ids") or [] if str(x).strip()],
        )

    def is_complete(self) -> bool:
        return bool(self.base_url and self.username)


@dataclass
class GeocoderConfig:
    base_url: str = "https://nominatim.openstreetmap.org"
    user_agent: str = "wayfarer/0.1"
    timeout_seconds: int = 30
    max_attempts: int = DEFAULT_MAX_GEOCODING_ATTEMPTS
    retry_delay_seconds: float = DEFAULT_GEOCODING_RETRY_DELAY_SECONDS
    retry_on_sync: bool = True

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "GeocoderConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", cls.base_url)).strip() or cls.base_url,
            user_agent=str(data.get("user_agent", cls.user_agent)).strip() or cls.user_agent,
            timeout_seconds=max(1, int(data.get("timeout_seconds", 30))),
            max_attempts=max(1, int(data.get("max_attempts", DEFAULT_MAX_GEOCODING_ATTEMPTS))),
            retry_delay_seconds=max(
                0.0, float(data.get("retry_delay_seconds", DEFAULT_GEOCODING_RETRY_DELAY_SECONDS))
            ),
            retry_on_sync=bool(data.get("retry_on_sync", True)),
        )


@dataclass
class SyncConfig:
    window_days: int = 1
    interval_seconds: int = 300
    timezone: str = "UTC"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            window_days=max(1, int(data.get("window_days", 1))),
            interval_seconds=max(30, int(data.get("interval_seconds", 300))),
            timezone=str(data.get("timezone", "UTC")).strip() or "UTC",
        )


@dataclass
class AppConfig:
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    geocoder: GeocoderConfig = field(default_factory=GeocoderConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            geocoder=GeocoderConfig.from_dict(data.get("geocoder")),
            sync=SyncConfig.from_dict(data.get("sync")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class SyncProgress:
    current_step: str
    progress: float
    items_processed: int = 0
    total_items: int = 0
    current_item: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class SyncResult:
    window_start: datetime
    window_end: datetime
    total_events: int = 0
    new_locations: int = 0
    updated_locations: int = 0
    deleted_locations: int = 0
    skipped_locations: int = 0
    geocoding_failures: int = 0
    errors: list[Any] = field(default_factory=list)
    duration_seconds: float = 0.0
    trigger: str = "manual"
    run_id: int | None = None
    sync_date: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def no_events_found(self) -> bool:
        return any(getattr(error, "informational", False) for error in self.errors)

    @property
    def is_success(self) -> bool:
        return not any(not getattr(error, "informational", False) for error in self.errors)

    @property
    def summary(self) -> str:
        return (
            f"Sync completed in {self.duration_seconds:.2f}s: {self.new_locations} new, "
            f"{self.updated_locations} updated, {self.deleted_locations} deleted, "
            f"{self.skipped_locations} skipped, {self.geocoding_failures} geocoding failures, "
            f"{len(self.errors)} errors"
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "window_start": serialize_datetime(self.window_start),
            "window_end": serialize_datetime(self.window_end),
            "total_events": self.total_events,
            "new_locations": self.new_locations,
            "updated_locations": self.updated_locations,
            "deleted_locations": self.deleted_locations,
            "skipped_locations": self.skipped_locations,
            "geocoding_failures": self.geocoding_failures,
            "errors": [error.to_dict() for error in self.errors],
            "duration_seconds": round(self.duration_seconds, 3),
            "trigger": self.trigger,
            "run_id": self.run_id,
            "sync_date": serialize_datetime(self.sync_date),
            "is_success": self.is_success,
            "no_events_found": self.no_events_found,
            "summary": self.summary,
        }


def day_window(now: datetime, days: int = 1) -> tuple[datetime, datetime]:
    """Return ``[start of now's local day, start of the day after the last day)``."""
    now = _ensure_tz(now)
    start = datetime.combine(now.date(), time.min, tzinfo=now.tzinfo)
    end_date = start.date() + timedelta(days=max(1, days))
    end = datetime.combine(end_date, time.min, tzinfo=now.tzinfo)
    return start, end
