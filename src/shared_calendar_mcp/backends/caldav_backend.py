"""CalDAV backend (Nextcloud, ownCloud, Radicale, etc.)."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from datetime import date, datetime, timedelta, timezone
from typing import Any

from ..records import to_utc
from .base import (
    Event,
    EventBatch,
    Priority,
    RecurrenceType,
    UserId,
    check_editable,
    is_generated_id,
    split_by_owner,
)

logger = logging.getLogger("shared-calendar-mcp")

FREQ_TYPES = {
    "DAILY": RecurrenceType.DAILY,
    "WEEKLY": RecurrenceType.WEEKLY,
    "MONTHLY": RecurrenceType.MONTHLY,
    "YEARLY": RecurrenceType.YEARLY,
}

ICAL_PRIORITIES = {Priority.HIGH: 1, Priority.MEDIUM: 5, Priority.LOW: 9}

# Event fields as VEVENT properties
_ICAL_PROPERTIES = {
    "title": "summary",
    "start": "dtstart",
    "end": "dtend",
    "description": "description",
    "location": "location",
    "priority": "priority",
    "color": "color",
}

# RRULE parts that cannot be expressed as a plain step
_UNSUPPORTED_PARTS = ("BYDAY", "BYMONTHDAY", "BYMONTH", "BYSETPOS", "COUNT", "BYHOUR", "BYMINUTE")


def _to_datetime(value: date | datetime) -> datetime:
    if isinstance(value, datetime):
        return to_utc(value)
    return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)


def priority_from_ical(value: Any) -> Priority:
    """RFC 5545 PRIORITY: 1-4 high, 5 (or undefined 0) medium, 6-9 low."""
    try:
        level = int(value)
    except (TypeError, ValueError):
        return Priority.MEDIUM
    if 1 <= level <= 4:
        return Priority.HIGH
    if 6 <= level <= 9:
        return Priority.LOW
    return Priority.MEDIUM


def _values(value: Any) -> list[Any]:
    """vRecur parts are lists when parsed from text, scalars when built in code."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _first(value: Any, default: Any = None) -> Any:
    values = _values(value)
    return values[0] if values else default


def recurrence_from_rrule(uid: str, rrule: Any) -> tuple[RecurrenceType, datetime | None]:
    """Map a simple RRULE onto (recurrence_type, recurrence_end)."""
    if not rrule:
        return RecurrenceType.NONE, None
    freq = _first(rrule.get("FREQ"), "")
    recurrence_type = FREQ_TYPES.get(str(freq).upper())
    interval = _first(rrule.get("INTERVAL"), 1)
    unsupported = [part for part in _UNSUPPORTED_PARTS if part in rrule]
    if recurrence_type is RecurrenceType.WEEKLY and len(_values(rrule.get("BYDAY"))) == 1:
        # Clients commonly spell out the start weekday on plain weekly rules
        unsupported.remove("BYDAY")
    try:
        interval = int(interval)
    except (TypeError, ValueError):
        interval = None
    if recurrence_type is None or interval != 1 or unsupported:
        logger.warning(
            "Event '%s': RRULE %s not supported (FREQ=%s INTERVAL=%s), showing first instance only",
            uid, dict(rrule), freq, interval,
        )
        return RecurrenceType.NONE, None
    until = _first(rrule.get("UNTIL"))
    if until is None:
        return recurrence_type, None
    if isinstance(until, (date, datetime)):
        return recurrence_type, _to_datetime(until)
    logger.warning("Event '%s': unusable UNTIL %r, no repeats generated", uid, until)
    return RecurrenceType.NONE, None


class CalDAVEventSource:
    """Event source for CalDAV servers (Nextcloud, etc.).

    Recurring events are fetched as master VEVENTs and expanded locally.
    """

    def __init__(self, calendar_name: str, config: dict[str, Any], owner_id: int | None = None):
        self._name = calendar_name
        self._config = config
        self._owner_id = owner_id
        self._calendar = None  # Lazy init

    def _get_calendar(self):
        """Lazy-initialize CalDAV client and calendar."""
        if self._calendar is not None:
            return self._calendar

        import caldav

        username = os.environ.get(self._config["username_env"], "")
        password = os.environ.get(self._config["password_env"], "")
        if not username or not password:
            raise ValueError(
                f"Calendar '{self._name}': CalDAV credentials not set "
                f"({self._config['username_env']}, {self._config['password_env']})"
            )

        url = self._config["url"]
        client = caldav.DAVClient(url=url, username=username, password=password)

        # Either pick a calendar of the principal by name, or use the URL as is
        calendar_name_filter = self._config.get("calendar_name")
        if calendar_name_filter:
            calendars = client.principal().calendars()
            for cal in calendars:
                if cal.name == calendar_name_filter:
                    self._calendar = cal
                    break
            if self._calendar is None:
                available = [c.name for c in calendars]
                raise ValueError(
                    f"Calendar '{self._name}': CalDAV calendar '{calendar_name_filter}' not found. "
                    f"Available: {available}"
                )
        else:
            self._calendar = caldav.Calendar(client=client, url=url)

        logger.info("CalDAV connected: %s → %s", self._name, url)
        return self._calendar

    def _parse_vevent(self, vevent: Any) -> Event:
        """Parse a master VEVENT component into an Event."""
        uid = str(vevent.get("uid", "")) if vevent.get("uid") else ""
        if is_generated_id(uid):
            raise ValueError(f"Event UID '{uid}' is reserved for generated occurrences")
        summary = str(vevent.get("summary")) if vevent.get("summary") else "(No title)"
        description = str(vevent.get("description")) if vevent.get("description") else ""
        location = str(vevent.get("location")) if vevent.get("location") else ""

        dtstart = vevent.get("dtstart")
        dtend = vevent.get("dtend")
        duration = vevent.get("duration")

        start_value = dtstart.dt if dtstart else None
        all_day = isinstance(start_value, date) and not isinstance(start_value, datetime)
        start = _to_datetime(start_value) if start_value is not None else None
        if dtend:
            end = _to_datetime(dtend.dt)
        elif duration and start is not None:
            end = start + duration.dt
        elif start is not None:
            end = start + timedelta(days=1) if all_day else start
        else:
            end = None

        recurrence_type, recurrence_end = recurrence_from_rrule(uid, vevent.get("rrule"))

        return Event(
            id=uid,
            owner_id=self._owner_id,
            title=summary,
            start=start,
            end=end,
            description=description,
            location=location,
            all_day=all_day,
            recurrence_type=recurrence_type,
            recurrence_end=recurrence_end,
            priority=priority_from_ical(vevent.get("priority")),
            color=str(vevent.get("color")) if vevent.get("color") else None,
            source=self._name,
        )

    def _masters(self, event_obj: Any) -> list[Any]:
        # Overridden instances (RECURRENCE-ID) are not detached from their series
        return [v for v in event_obj.icalendar_instance.walk("VEVENT") if not v.get("recurrence-id")]

    def _list_events_sync(self, user_id: UserId, start: datetime, end: datetime) -> EventBatch:
        cal = self._get_calendar()
        results = cal.search(start=start, end=end, event=True, expand=False)

        events = []
        for event_obj in results:
            for vevent in self._masters(event_obj):
                try:
                    events.append(self._parse_vevent(vevent))
                except (ValueError, TypeError) as e:
                    logger.warning("Calendar '%s': skipping VEVENT: %s", self._name, e)
        return split_by_owner(events, user_id)

    def _event_object(self, event_id: str) -> tuple[Any, Any]:
        """Return (caldav event, master VEVENT) of a UID."""
        from caldav.lib.error import NotFoundError

        cal = self._get_calendar()
        try:
            event_obj = cal.event_by_uid(event_id)
        except NotFoundError:
            raise ValueError(f"Event not found: {event_id}") from None
        vevents = self._masters(event_obj)
        if not vevents:
            raise ValueError(f"Event not found: {event_id}")
        return event_obj, vevents[0]

    def _get_event_sync(self, event_id: str) -> Event:
        _, vevent = self._event_object(event_id)
        return self._parse_vevent(vevent)

    def _apply_fields(self, vevent: Any, fields: dict[str, Any]) -> None:
        """Write Event field values onto a VEVENT."""
        for name in ("all_day", "user_permissions"):
            if fields.get(name):
                raise ValueError(f"Calendar '{self._name}': CalDAV events cannot store '{name}'")
        for name, value in fields.items():
            prop = _ICAL_PROPERTIES.get(name)
            if prop is None:
                continue
            if name == "end":
                vevent.pop("duration", None)
            vevent.pop(prop, None)
            if name == "priority":
                vevent.add(prop, ICAL_PRIORITIES[Priority(value)])
            elif value not in (None, ""):
                vevent.add(prop, value)

    def _create_event_sync(
        self, user_id: UserId, title: str, start: datetime, end: datetime, fields: dict[str, Any]
    ) -> Event:
        from icalendar import Calendar
        from icalendar import Event as ICalEvent

        check_editable(fields)
        if user_id != self._owner_id:
            raise ValueError(f"Calendar '{self._name}': only user {self._owner_id} may add events")

        vevent = ICalEvent()
        vevent.add("uid", str(uuid.uuid4()))
        vevent.add("dtstamp", datetime.now(timezone.utc))
        self._apply_fields(vevent, {"title": title, "start": start, "end": end, **fields})
        vcal = Calendar()
        vcal.add("prodid", "-//shared-calendar-mcp//EN")
        vcal.add("version", "2.0")
        vcal.add_component(vevent)

        self._get_calendar().save_event(vcal.to_ical().decode("utf-8"))
        logger.info("CalDAV event created: %s in '%s'", title, self._name)
        return self._parse_vevent(vevent)

    def _update_event_sync(self, event_id: str, fields: dict[str, Any]) -> Event:
        check_editable(fields)
        event_obj, vevent = self._event_object(event_id)
        self._apply_fields(vevent, fields)
        event_obj.save()
        logger.info("CalDAV event updated: %s in '%s'", event_id, self._name)
        return self._parse_vevent(vevent)

    def _delete_event_sync(self, event_id: str) -> bool:
        from caldav.lib.error import NotFoundError

        cal = self._get_calendar()
        try:
            event_obj = cal.event_by_uid(event_id)
        except NotFoundError:
            return False
        event_obj.delete()
        logger.info("CalDAV event deleted: %s in '%s'", event_id, self._name)
        return True

    async def list_events(self, user_id: UserId, start: datetime, end: datetime) -> EventBatch:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._list_events_sync, user_id, start, end)

    async def get_event(self, user_id: UserId, event_id: str) -> Event:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._get_event_sync, event_id)

    async def create_event(
        self, user_id: UserId, title: str, start: datetime, end: datetime, **fields: object
    ) -> Event:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._create_event_sync, user_id, title, start, end, fields)

    async def update_event(self, user_id: UserId, event_id: str, **fields: object) -> Event:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._update_event_sync, event_id, fields)

    async def delete_event(self, user_id: UserId, event_id: str) -> bool:
        loop = asyncio.get_event_loop()
        return await loop.run_in_executor(None, self._delete_event_sync, event_id)
