from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence

from wayfarer.errors import EventProcessingFailed
from wayfarer.models import ExternalEvent, Location


FIELD_SEPARATOR = "\x00"


def _fingerprint_part(value: str | datetime | None) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        return repr(value.timestamp())
    return str(value)


def fingerprint(
    title: str | None,
    location_text: str | None,
    start_time: datetime | None,
    end_time: datetime | None,
    notes: str | None,
) -> str:
    joined = FIELD_SEPARATOR.join(
        _fingerprint_part(value) for value in (title, location_text, start_time, end_time, notes)
    )
    return hashlib.sha256(joined.encode("utf-8")).hexdigest()


def event_fingerprint(event: ExternalEvent) -> str:
    return fingerprint(event.title, event.location_text, event.start_time, event.end_time, event.notes)


@dataclass
class PlannedUpdate:
    location: Location
    event: ExternalEvent
    fingerprint: str


@dataclass
class PlannedCreate:
    event: ExternalEvent
    fingerprint: str


@dataclass
class ReconcilePlan:
    to_create: list[PlannedCreate] = field(default_factory=list)
    to_update: list[PlannedUpdate] = field(default_factory=list)
    to_delete: list[Location] = field(default_factory=list)
    unchanged: list[Location] = field(default_factory=list)
    rejected: list[EventProcessingFailed] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not (self.to_create or self.to_update or self.to_delete)

    @property
    def action_count(self) -> int:
        return len(self.to_create) + len(self.to_update) + len(self.to_delete) + len(self.unchanged)


def _rejection_reason(event: ExternalEvent) -> str:
    if not str(event.id or "").strip():
        return "Event has no identifier"
    if not event.has_location:
        return "Event has no valid location"
    if event.start_time is None or event.end_time is None:
        return "Event has no start or end time"
    return ""


def plan(existing: Iterable[Location], events: Sequence[ExternalEvent]) -> ReconcilePlan:
    """Diff the persisted working set against one batch of external events.

    ``existing`` should hold the non-deleted records of the sync window.
    """
    result = ReconcilePlan()
    by_event_id: dict[str, Location] = {}
    for location in existing:
        if location.external_event_id:
            by_event_id.setdefault(location.external_event_id, location)

    seen_event_ids: set[str] = set()
    for event in events:
        event_id = str(event.id or "").strip()
        if event_id and event_id in seen_event_ids:
            result.rejected.append(EventProcessingFailed("Duplicate event identifier in batch", event_id))
            continue
        if event_id:
            seen_event_ids.add(event_id)

        reason = _rejection_reason(event)
        if reason:
            result.rejected.append(EventProcessingFailed(reason, event_id or None))
            continue

        digest = event_fingerprint(event)
        current = by_event_id.get(event_id)
        if current is None:
            result.to_create.append(PlannedCreate(event=event, fingerprint=digest))
        elif current.change_fingerprint == digest:
            result.unchanged.append(current)
        else:
            result.to_update.append(PlannedUpdate(location=current, event=event, fingerprint=digest))

    for event_id, location in by_event_id.items():
        if event_id not in seen_event_ids:
            result.to_delete.append(location)
    return result
