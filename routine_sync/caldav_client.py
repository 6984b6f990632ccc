from __future__ import annotations

import hashlib
import logging
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

import caldav
from caldav.lib import error as caldav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent

from routine_sync.errors import NotFoundError
from routine_sync.models import CalDAVConfig, CalendarEvent

logger = logging.getLogger(__name__)

PRIMARY_CALENDAR_ALIASES = {"", "primary"}


def _data_hash(raw_ical: str) -> str:
    return hashlib.sha1(raw_ical.encode("utf-8")).hexdigest()  # nosec B324


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _extract_uid_from_raw_ical(raw_data: Any) -> str:
    try:
        calendar_obj = ICalendar.from_ical(_decode_raw_ical(raw_data))
    except ValueError:
        return ""
    vevent = _first_vevent(calendar_obj)
    if vevent is None:
        return ""
    return str(vevent.get("UID", "")).strip()


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class CalDAVService:
    """Calendar operations by event uid on one CalDAV principal."""

    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.is_configured():
            raise RuntimeError("CalDAV config is incomplete.")
        self._client = caldav.DAVClient(
            url=self.config.base_url,
            username=self.config.username,
            password=self.config.password,
        )
        self._principal = self._client.principal()

    def list_calendars(self) -> list[dict[str, str]]:
        self._connect()
        self._calendar_cache = {}
        calendars: list[dict[str, str]] = []
        for calendar in self._principal.calendars():
            calendar_id = _normalize_calendar_id(str(calendar.url))
            self._calendar_cache[calendar_id] = calendar
            calendars.append({"calendar_id": calendar_id, "name": getattr(calendar, "name", "") or calendar_id})
        return calendars

    def _get_calendar(self, calendar_id: str) -> Any:
        self._connect()
        wanted = _normalize_calendar_id(calendar_id)
        if wanted in PRIMARY_CALENDAR_ALIASES:
            calendars = self._principal.calendars()
            if not calendars:
                raise NotFoundError("No calendars available for this account.")
            return calendars[0]
        if wanted in self._calendar_cache:
            return self._calendar_cache[wanted]
        self.list_calendars()
        if wanted not in self._calendar_cache:
            raise NotFoundError(f"Calendar not found: {calendar_id}")
        return self._calendar_cache[wanted]

    def list_events(self, calendar_id: str, start: datetime, end: datetime) -> list[CalendarEvent]:
        calendar = self._get_calendar(calendar_id)
        resources = calendar.search(start=start, end=end, event=True, expand=True)
        events: list[CalendarEvent] = []
        for item in resources:
            try:
                event = self._parse_resource(calendar_id, item)
            except ValueError as exc:
                logger.warning("skipping unreadable calendar resource %s: %s", getattr(item, "url", ""), exc)
                continue
            if event.uid:
                events.append(event)
        return events

    def get_event(self, calendar_id: str, uid: str) -> CalendarEvent | None:
        calendar = self._get_calendar(calendar_id)
        resource = self._find_resource_by_uid(calendar, uid)
        if resource is None:
            return None
        return self._parse_resource(calendar_id, resource)

    def create_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        calendar = self._get_calendar(calendar_id)
        to_save = event if event.uid else event.with_updates(uid=str(uuid.uuid4()))
        resource = calendar.save_event(self._build_ical(to_save))
        return self._parse_resource(calendar_id, resource)

    def update_event(self, calendar_id: str, event: CalendarEvent) -> CalendarEvent:
        calendar = self._get_calendar(calendar_id)
        resource = None
        if event.href:
            try:
                resource = calendar.event_by_url(event.href)
            except caldav_error.NotFoundError:
                resource = None
        if resource is None:
            resource = self._find_resource_by_uid(calendar, event.uid)
        if resource is None:
            raise NotFoundError(f"Calendar event not found: {event.uid}")
        resource.data = self._build_ical(event)
        resource.save()
        return self._parse_resource(calendar_id, resource)

    def _parse_resource(self, calendar_id: str, resource: Any) -> CalendarEvent:
        raw_ical = _decode_raw_ical(resource.data)
        calendar_obj = ICalendar.from_ical(raw_ical)
        vevent = _first_vevent(calendar_obj)
        if vevent is None:
            raise ValueError("VEVENT missing in calendar resource.")

        dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
        dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
        all_day = isinstance(dtstart_raw, date) and not isinstance(dtstart_raw, datetime)
        if isinstance(dtstart_raw, datetime) and dtstart_raw.tzinfo is None:
            dtstart_raw = dtstart_raw.replace(tzinfo=timezone.utc)
        if isinstance(dtend_raw, datetime) and dtend_raw.tzinfo is None:
            dtend_raw = dtend_raw.replace(tzinfo=timezone.utc)
        if dtstart_raw is not None and dtend_raw is None:
            dtend_raw = dtstart_raw + (timedelta(days=1) if all_day else timedelta(hours=1))
        return CalendarEvent(
            calendar_id=calendar_id,
            uid=str(vevent.get("UID", "")).strip(),
            summary=str(vevent.get("SUMMARY", "")).strip(),
            description=str(vevent.get("DESCRIPTION", "")).strip(),
            start=dtstart_raw,
            end=dtend_raw,
            all_day=all_day,
            href=str(getattr(resource, "url", "") or ""),
            etag=_data_hash(raw_ical),
        )

    def _build_ical(self, event: CalendarEvent) -> str:
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", "-//Routine Sync//Calendar Bridge//EN")
        calendar_obj.add("VERSION", "2.0")
        vevent = ICEvent()
        vevent.add("UID", event.uid)
        vevent.add("SUMMARY", event.summary or "")
        vevent.add("DESCRIPTION", event.description or "")
        vevent.add("DTSTAMP", datetime.now(timezone.utc))
        if event.all_day and isinstance(event.start, date):
            start_day = event.start.date() if isinstance(event.start, datetime) else event.start
            vevent.add("DTSTART", start_day)
            vevent.add("DTEND", start_day + timedelta(days=1))
        else:
            if isinstance(event.start, datetime):
                vevent.add("DTSTART", _as_utc(event.start))
            if isinstance(event.end, datetime):
                vevent.add("DTEND", _as_utc(event.end))
        calendar_obj.add_component(vevent)
        return calendar_obj.to_ical().decode("utf-8")

    def _find_resource_by_uid(self, calendar: Any, uid: str) -> Any:
        if not uid:
            return None
        try:
            resource = calendar.event_by_uid(uid)
            if isinstance(resource, list):
                resource = resource[0] if resource else None
            if resource is not None:
                return resource
        except caldav_error.NotFoundError:
            return None
        except caldav_error.DAVError as exc:
            # Some servers reject uid lookups; fall back to a scan.
            logger.debug("uid lookup failed for %s: %s", uid, exc)

        for resource in calendar.events():
            if _extract_uid_from_raw_ical(getattr(resource, "data", "")) == uid:
                return resource
        return None
