from __future__ import annotations

from typing import Any


class SyncError(Exception):
    code = "sync_error"
    informational = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.default_message())

    def default_message(self) -> str:
        return "Sync failed"

    @property
    def message(self) -> str:
        return str(self)

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}


class InvalidRange(SyncError):
    code = "invalid_range"

    def default_message(self) -> str:
        return "Invalid date range provided"


class SyncInProgress(SyncError):
    code = "sync_in_progress"

    def default_message(self) -> str:
        return "Sync is already in progress"


class AccessDenied(SyncError):
    code = "access_denied"

    def default_message(self) -> str:
        return "Calendar access is required for syncing events"


class CalendarUnavailable(SyncError):
    code = "calendar_unavailable"

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Calendar source unavailable: {detail}")


class EventProcessingFailed(SyncError):
    code = "event_processing_failed"

    def __init__(self, reason: str, event_id: str | None = None) -> None:
        self.reason = reason
        self.event_id = event_id
        super().__init__(f"Failed to process event: {reason}")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["event_id"] = self.event_id
        return payload


class GeocodeError(SyncError):
    code = "geocoding_failed"

    def __init__(self, address: str, detail: str = "") -> None:
        self.address = address
        self.detail = detail
        super().__init__(f"Failed to geocode address: {address}")

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["address"] = self.address
        return payload


class StoreError(SyncError):
    code = "store_error"

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"Database error: {detail}")


class NoEventsFound(SyncError):
    code = "no_events_found"
    informational = True

    def default_message(self) -> str:
        return "No events with location found for specified date range"


class LocationNotFound(Exception):
    def __init__(self, location_id: str) -> None:
        self.location_id = location_id
        super().__init__(f"Location not found: {location_id}")
