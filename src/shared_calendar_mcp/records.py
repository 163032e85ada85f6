"""Conversion of raw storage records into typed Event values."""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Mapping

from dateutil.parser import ParserError
from dateutil.parser import parse as parse_dt

from .backends.base import Event, Permission, Priority, RecurrenceType, UserId, is_generated_id

logger = logging.getLogger("shared-calendar-mcp")


class RecordError(ValueError):
    """A record cannot be turned into an Event at all."""


def to_utc(value: datetime) -> datetime:
    """Return an aware UTC datetime. Naive values are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO 8601 string, epoch millis, date or datetime. None if unusable."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return to_utc(value)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    if isinstance(value, str):
        try:
            return to_utc(parse_dt(value))
        except (ParserError, ValueError, OverflowError):
            return None
    return None


def _enum_value(enum_cls, raw: Any, default):
    if raw is None or raw == "":
        return default
    try:
        return enum_cls(str(raw).strip().lower())
    except ValueError:
        return None


def _user_id(raw: Any) -> UserId | None:
    if isinstance(raw, Mapping):
        raw = raw.get("id")
    if raw is None or isinstance(raw, bool):
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        return None


def _owner_id(record: Mapping[str, Any]) -> UserId | None:
    if record.get("ownerId") is not None:
        return _user_id(record["ownerId"])
    return _user_id(record.get("user"))


def _permissions(event_id: str, raw: Any) -> dict[UserId, Permission]:
    permissions: dict[UserId, Permission] = {}
    if not isinstance(raw, Mapping):
        return permissions
    for key, value in raw.items():
        user_id = _user_id(key)
        if user_id is None:
            logger.warning("Event '%s': dropping permission for non-numeric user '%s'", event_id, key)
            continue
        permission = _enum_value(Permission, value, Permission.VIEW)
        if permission is None:
            logger.warning("Event '%s': unknown permission '%s', using view", event_id, value)
            permission = Permission.VIEW
        permissions[user_id] = permission
    return permissions


def event_from_record(record: Mapping[str, Any], source: str = "") -> Event:
    """Build an Event from a camelCase record as served by the events API.

    Unusable timestamps become None and unknown enum values fall back to
    their defaults; only a missing or reserved id raises RecordError.
    """
    raw_id = record.get("id")
    if raw_id is None or str(raw_id).strip() == "":
        raise RecordError("Event record has no 'id'")
    event_id = str(raw_id)
    if is_generated_id(event_id):
        raise RecordError(f"Event id '{event_id}' is reserved for generated occurrences")

    start = parse_timestamp(record.get("startTime"))
    end = parse_timestamp(record.get("endTime"))
    if start is None or end is None:
        logger.warning(
            "Event '%s': unusable timestamps (startTime=%r, endTime=%r)",
            event_id, record.get("startTime"), record.get("endTime"),
        )

    recurrence_type = _enum_value(RecurrenceType, record.get("recurrenceType"), RecurrenceType.NONE)
    if recurrence_type is None:
        logger.warning(
            "Event '%s': unknown recurrenceType '%s', treating as none",
            event_id, record.get("recurrenceType"),
        )
        recurrence_type = RecurrenceType.NONE

    recurrence_end = parse_timestamp(record.get("recurrenceEnd"))
    if recurrence_end is None and record.get("recurrenceEnd") not in (None, ""):
        logger.warning(
            "Event '%s': unusable recurrenceEnd %r, no repeats generated",
            event_id, record.get("recurrenceEnd"),
        )
        recurrence_type = RecurrenceType.NONE

    priority = _enum_value(Priority, record.get("priority"), Priority.MEDIUM) or Priority.MEDIUM

    shared_with = frozenset(
        uid for uid in (_user_id(u) for u in record.get("sharedWith") or []) if uid is not None
    )

    return Event(
        id=event_id,
        owner_id=_owner_id(record),
        title=str(record.get("title") or ""),
        start=start,
        end=end,
        description=str(record.get("description") or ""),
        location=str(record.get("location") or ""),
        all_day=bool(record.get("isAllDay", False)),
        recurrence_type=recurrence_type,
        recurrence_end=recurrence_end,
        priority=priority,
        color=record.get("color") or None,
        is_shared=bool(record.get("isShared", False)),
        shared_with=shared_with,
        user_permissions=_permissions(event_id, record.get("userPermissions")),
        source=source,
    )



def format_timestamp(value: datetime) -> str:
    """UTC timestamp in the millisecond ``Z`` form the events API uses."""
    value = to_utc(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


_RECORD_KEYS = {
    "owner_id": "ownerId",
    "title": "title",
    "start": "startTime",
    "end": "endTime",
    "description": "description",
    "location": "location",
    "all_day": "isAllDay",
    "recurrence_type": "recurrenceType",
    "recurrence_end": "recurrenceEnd",
    "priority": "priority",
    "color": "color",
    "is_shared": "isShared",
    "shared_with": "sharedWith",
    "user_permissions": "userPermissions",
}


def record_from_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
    """camelCase record keys and wire values for a set of Event field values."""
    record: dict[str, Any] = {}
    for name, value in fields.items():
        key = _RECORD_KEYS.get(name)
        if key is None:
            raise ValueError(f"Unknown event field '{name}'")
        if isinstance(value, datetime):
            value = format_timestamp(value)
        elif isinstance(value, Enum):
            value = value.value.upper()
        elif name == "shared_with":
            value = sorted(value)
        elif name == "user_permissions":
            value = {str(uid): Permission(p).value.upper() for uid, p in value.items()}
        record[key] = value
    return record


def record_from_event(event: Event) -> dict[str, Any]:
    """Full record of an event, as sent back to the events API on update."""
    record = {"id": event.id}
    record.update(record_from_fields({name: getattr(event, name) for name in _RECORD_KEYS}))
    return record
