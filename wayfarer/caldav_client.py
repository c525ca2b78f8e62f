from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Protocol

import caldav
from caldav.lib import error as caldav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from wayfarer.errors import AccessDenied, CalendarUnavailable
from wayfarer.models import CalDAVConfig, ExternalEvent, date_to_datetime, serialize_datetime

logger = logging.getLogger(__name__)


class CalendarSource(Protocol):
    def fetch_events(self, start: datetime, end: datetime) -> list[ExternalEvent]: ...


@dataclass
class CalendarInfo:
    calendar_id: str
    name: str


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _coerce_datetime(value: Any, is_end: bool = False) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return date_to_datetime(value, is_end=is_end)
    return None


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _optional_text(vevent: ICEvent, key: str) -> str | None:
    value = vevent.get(key)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def parse_vevent(raw_ical: str, calendar_id: str = "") -> ExternalEvent | None:
    """Turn one iCalendar resource into an event, or None when it has no VEVENT/UID."""
    calendar_obj = ICalendar.from_ical(raw_ical)
    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        return None
    uid = str(vevent.get("UID", "")).strip()
    if not uid:
        return None

    dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
    start = _coerce_datetime(dtstart_raw, is_end=False)
    dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
    end = _coerce_datetime(dtend_raw, is_end=True)
    if end is None and vevent.get("DURATION") is not None and start is not None:
        end = start + vevent.decoded("DURATION")
    if start is not None and end is None:
        end = start + timedelta(hours=1)

    # Expanded recurrences share a UID; the instance start keeps ids unique.
    event_id = uid
    if vevent.get("RECURRENCE-ID") is not None:
        recurrence = _coerce_datetime(vevent.decoded("RECURRENCE-ID"))
        event_id = f"{uid}@{serialize_datetime(recurrence)}"

    return ExternalEvent(
        id=event_id,
        title=str(vevent.get("SUMMARY", "")).strip(),
        location_text=_optional_text(vevent, "LOCATION"),
        start_time=start,
        end_time=end,
        notes=_optional_text(vevent, "DESCRIPTION"),
        calendar_id=calendar_id,
    )


class CalDAVCalendarSource:
    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.is_complete():
            raise CalendarUnavailable("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        try:
            self._principal = self._client.principal()
        except caldav_error.AuthorizationError as exc:
            raise AccessDenied(f"CalDAV authorization failed: {exc}") from exc
        except Exception as exc:
            raise CalendarUnavailable(f"{type(exc).__name__}: {exc}") from exc

    def _calendars(self) -> list[Any]:
        self._connect()
        try:
            calendars = list(self._principal.calendars())
        except caldav_error.AuthorizationError as exc:
            raise AccessDenied(f"CalDAV authorization failed: {exc}") from exc
        except Exception as exc:
            raise CalendarUnavailable(f"{type(exc).__name__}: {exc}") from exc
        wanted = {_normalize_calendar_id(cid) for cid in self.config.calendar_ids}
        if not wanted:
            return calendars
        return [calendar for calendar in calendars if _normalize_calendar_id(str(calendar.url)) in wanted]

    def list_calendars(self) -> list[CalendarInfo]:
        output: list[CalendarInfo] = []
        for calendar in self._calendars():
            calendar_id = str(calendar.url)
            output.append(CalendarInfo(calendar_id=calendar_id, name=getattr(calendar, "name", "") or calendar_id))
        return output

    def fetch_events(self, start: datetime, end: datetime) -> list[ExternalEvent]:
        events: list[ExternalEvent] = []
        for calendar in self._calendars():
            calendar_id = str(calendar.url)
            try:
                resources = calendar.search(start=start, end=end, event=True, expand=True)
            except caldav_error.AuthorizationError as exc:
                raise AccessDenied(f"CalDAV authorization failed: {exc}") from exc
            except Exception as exc:
                raise CalendarUnavailable(f"{type(exc).__name__}: {exc}") from exc
            for resource in resources:
                try:
                    event = parse_vevent(_decode_raw_ical(resource.data), calendar_id)
                except ValueError as exc:
                    logger.warning("Skipping unparsable resource in %s: %s", calendar_id, exc)
                    continue
                if event is not None:
                    events.append(event)
        return events
