#!/usr/bin/env python3
"""
shared-calendar-mcp: Shared calendar occurrence server.

Loads owned and shared events per user from configured sources, expands
recurring events into occurrences for the active view and applies the
viewer's ownership/sharing/priority filters.

Environment variables:
    CALENDAR_CONFIG: Path to calendar_sources.yaml (default: /config/calendar_sources.yaml)
    CALENDAR_BUFFER_DAYS: Days of padding around the view when querying sources (default: 7)
"""

import logging
import os
import sys
from datetime import date, datetime, timezone
from typing import Any

from mcp.server.fastmcp import FastMCP

from . import config as config_module
from .backends.base import Event, EventBatch, EventSource, Permission, Priority
from .buckets import VALID_VIEWS, bucket, overlaps, query_window, view_cells, view_range
from .config import CalendarAccount, load_config
from .expander import Occurrence, OccurrenceKey, expand_all
from .records import to_utc
from .visibility import (
    FilterOptions,
    can_delete,
    can_edit,
    can_share,
    filter_visible,
    permission_label,
    permission_of,
)

# MCP stdio servers must NEVER write to stdout; log to stderr only.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    stream=sys.stderr,
)
logger = logging.getLogger("shared-calendar-mcp")


# ---------------------------------------------------------------------------
# Module-level state
# ---------------------------------------------------------------------------

_accounts: dict[str, CalendarAccount] = {}
_backends: dict[str, EventSource] = {}


def _init_backend(account: CalendarAccount) -> EventSource:
    """Create event source instance for a calendar account."""
    if account.type == "rest":
        from .backends.rest import RestEventSource
        return RestEventSource(account.name, account.config)
    elif account.type == "file":
        from .backends.file_backend import FileEventSource
        return FileEventSource(account.name, account.config, owner_id=account.owner_id)
    elif account.type == "caldav":
        from .backends.caldav_backend import CalDAVEventSource
        return CalDAVEventSource(account.name, account.config, owner_id=account.owner_id)
    else:
        raise ValueError(f"Unknown backend type: {account.type}")


def _get_backend(calendar: str) -> EventSource | None:
    """Get event source by calendar name. Lazy-initializes on first access."""
    if calendar not in _accounts:
        return None
    if calendar not in _backends:
        _backends[calendar] = _init_backend(_accounts[calendar])
    return _backends[calendar]


def _visible_to(account: CalendarAccount, user_id: int) -> bool:
    return account.visibility == "shared" or account.owner_id == user_id


def _validate_calendar(calendar: str, user_id: int | None = None) -> dict | None:
    """Return error dict if calendar is invalid, None if valid."""
    if not _accounts:
        return {"error": "No calendars configured. Set CALENDAR_CONFIG env var."}
    if calendar not in _accounts:
        return {"error": f"Unknown calendar '{calendar}'. Available: {list(_accounts.keys())}"}
    if user_id is not None and not _visible_to(_accounts[calendar], user_id):
        return {"error": f"Calendar '{calendar}' is not available to user {user_id}"}
    return None


def _parse_date(value: str) -> date:
    """Parse an ISO 8601 date (or datetime, whose date is used). Empty = today (UTC)."""
    if not value:
        return datetime.now(timezone.utc).date()
    from dateutil.parser import parse as parse_dt
    return parse_dt(value).date()


def _parse_datetime(value: str) -> datetime:
    """Parse an ISO 8601 date/time. Naive values are taken to be UTC."""
    from dateutil.parser import parse as parse_dt
    return to_utc(parse_dt(value))


def _parse_priority(value: str) -> Priority:
    return Priority(value.strip().lower())


def _parse_permissions(value: dict[str, str]) -> dict[int, Permission]:
    """Map {"<user id>": "view|edit|admin"} onto typed permissions."""
    return {int(uid): Permission(str(p).strip().lower()) for uid, p in value.items()}


def _event_to_dict(event: Event) -> dict[str, Any]:
    """Convert Event to JSON-friendly dict."""
    return {
        "id": event.id,
        "calendar": event.source,
        "owner_id": event.owner_id,
        "title": event.title,
        "start": event.start.isoformat() if event.start else None,
        "end": event.end.isoformat() if event.end else None,
        "description": event.description,
        "location": event.location,
        "all_day": event.all_day,
        "recurrence_type": event.recurrence_type.value,
        "recurrence_end": event.recurrence_end.isoformat() if event.recurrence_end else None,
        "priority": event.priority.value,
        "color": event.display_color,
        "is_shared": event.is_shared,
        "shared_with": sorted(event.shared_with),
    }


def _occurrence_to_dict(occurrence: Occurrence, user_id: int) -> dict[str, Any]:
    """Convert Occurrence to JSON-friendly dict, with the viewer's rights."""
    event = occurrence.event
    return {
        "occurrence_id": occurrence.occurrence_id,
        "source_event_id": occurrence.source_event_id,
        "is_generated": occurrence.is_generated,
        "calendar": event.source,
        "title": event.title,
        "start": occurrence.start.isoformat(),
        "end": occurrence.end.isoformat(),
        "description": event.description,
        "location": event.location,
        "all_day": event.all_day,
        "priority": event.priority.value,
        "color": occurrence.color,
        "recurrence_type": event.recurrence_type.value,
        "permission": permission_of(occurrence, user_id).value,
        "permission_label": permission_label(occurrence, user_id),
        "can_edit": can_edit(occurrence, user_id),
        "can_delete": can_delete(occurrence, user_id),
    }


async def _fetch_events(
    user_id: int, calendars: list[str], start: datetime, end: datetime
) -> tuple[EventBatch, list[str]]:
    """Fetch events from every calendar, collecting per-calendar errors."""
    batch = EventBatch()
    errors: list[str] = []
    for cal_name in calendars:
        backend = _get_backend(cal_name)
        if not backend:
            errors.append(f"Backend not available: {cal_name}")
            continue
        try:
            batch.extend(await backend.list_events(user_id, start, end))
        except Exception as e:
            logger.warning("Failed to fetch events from '%s': %s", cal_name, e)
            errors.append(f"{cal_name}: {e}")
    return batch, errors


async def _query(
    user_id: int, view: str, date_str: str, calendar: str, options: FilterOptions
) -> dict[str, Any]:
    """Shared fetch → expand → filter pipeline of the occurrence tools."""
    if view not in VALID_VIEWS:
        return {"error": f"Invalid view '{view}'. Must be one of: {sorted(VALID_VIEWS)}"}
    try:
        anchor = _parse_date(date_str)
    except (ValueError, OverflowError):
        return {"error": f"Invalid date: {date_str}"}

    if calendar:
        err = _validate_calendar(calendar, user_id)
        if err:
            return err
        calendars_to_query = [calendar]
    else:
        calendars_to_query = [n for n, a in _accounts.items() if _visible_to(a, user_id)]

    window_start, window_end = query_window(view, anchor, config_module.BUFFER_DAYS)
    batch, errors = await _fetch_events(user_id, calendars_to_query, window_start, window_end)

    occurrences = filter_visible(expand_all(batch.all(), window_start, window_end), user_id, options)
    view_start, view_end = view_range(view, anchor)
    in_view = [o for o in occurrences if overlaps(o.start, o.end, view_start, view_end)]

    logger.debug(
        "User %s: %d event(s) → %d visible occurrence(s) in %s view of %s",
        user_id, len(batch.owned) + len(batch.shared), len(in_view), view, anchor,
    )
    return {
        "anchor": anchor,
        "calendars_queried": calendars_to_query,
        "view_start": view_start,
        "view_end": view_end,
        "occurrences": in_view,
        "errors": errors,
    }


def _result_header(user_id: int, view: str, query: dict[str, Any]) -> dict[str, Any]:
    return {
        "user_id": user_id,
        "view": view,
        "date": query["anchor"].isoformat(),
        "calendars_queried": query["calendars_queried"],
        "start": query["view_start"].isoformat(),
        "end": query["view_end"].isoformat(),
    }


async def _resolve(user_id: int, occurrence_id: str, calendar: str) -> tuple[Event | None, dict | None]:
    """Map an occurrence id back to its source event (series-level)."""
    err = _validate_calendar(calendar, user_id)
    if err:
        return None, err
    backend = _get_backend(calendar)
    if not backend:
        return None, {"error": f"Backend not available: {calendar}"}

    key = OccurrenceKey.parse(occurrence_id)
    source_event_id = key.source_event_id if key else occurrence_id
    try:
        return await backend.get_event(user_id, source_event_id), None
    except Exception as e:
        return None, {"error": f"Failed to get event: {e}"}


# ---------------------------------------------------------------------------
# MCP Server + Tools
# ---------------------------------------------------------------------------

mcp = FastMCP("shared-calendar")


@mcp.tool()
async def list_calendars() -> dict:
    """List all configured calendar sources.

    Returns name, label, and type for each calendar.
    """
    if not _accounts:
        return {"error": "No calendars configured"}
    return {
        "calendars": [
            {"name": a.name, "label": a.label, "type": a.type, "visibility": a.visibility}
            for a in _accounts.values()
        ]
    }


@mcp.tool()
async def list_occurrences(
    user_id: int,
    view: str = "month",
    date: str = "",
    calendar: str = "",
    show_own: bool = True,
    show_shared: bool = True,
    show_high_priority: bool = True,
    show_medium_priority: bool = True,
    show_low_priority: bool = True,
) -> dict:
    """List the event occurrences a user sees in a day, week or month view.

    Recurring events are expanded into one entry per occurrence. Generated
    repeats carry their own occurrence_id and the source_event_id of the series.

    Args:
        user_id: Viewing user
        view: "day", "week" or "month"
        date: Any date inside the view (ISO 8601, e.g. "2026-02-13"). Default: today.
        calendar: Calendar name. Empty = all calendars available to the user.
        show_own: Include events the user owns
        show_shared: Include events shared with the user
        show_high_priority: Include high priority events
        show_medium_priority: Include medium priority events
        show_low_priority: Include low priority events
    """
    options = FilterOptions(
        show_own=show_own,
        show_shared=show_shared,
        show_high_priority=show_high_priority,
        show_medium_priority=show_medium_priority,
        show_low_priority=show_low_priority,
    )
    query = await _query(user_id, view, date, calendar, options)
    if "error" in query:
        return query

    result = _result_header(user_id, view, query)
    result["count"] = len(query["occurrences"])
    result["occurrences"] = [_occurrence_to_dict(o, user_id) for o in query["occurrences"]]
    if query["errors"]:
        result["errors"] = query["errors"]
    return result


@mcp.tool()
async def get_calendar_grid(
    user_id: int,
    view: str = "month",
    date: str = "",
    calendar: str = "",
    show_own: bool = True,
    show_shared: bool = True,
    show_high_priority: bool = True,
    show_medium_priority: bool = True,
    show_low_priority: bool = True,
) -> dict:
    """Occurrences bucketed into the cells of a view.

    Day views are split per hour, week and month views per day. An occurrence
    spanning several cells is listed in each of them.

    Args:
        user_id: Viewing user
        view: "day", "week" or "month"
        date: Any date inside the view (ISO 8601). Default: today.
        calendar: Calendar name. Empty = all calendars available to the user.
        show_own: Include events the user owns
        show_shared: Include events shared with the user
        show_high_priority: Include high priority events
        show_medium_priority: Include medium priority events
        show_low_priority: Include low priority events
    """
    options = FilterOptions(
        show_own=show_own,
        show_shared=show_shared,
        show_high_priority=show_high_priority,
        show_medium_priority=show_medium_priority,
        show_low_priority=show_low_priority,
    )
    query = await _query(user_id, view, date, calendar, options)
    if "error" in query:
        return query

    cells = bucket(query["occurrences"], view_cells(view, query["anchor"]))
    result = _result_header(user_id, view, query)
    result["cells"] = [
        {
            "start": cell.start.isoformat(),
            "end": cell.end.isoformat(),
            "occurrence_ids": [o.occurrence_id for o in items],
        }
        for cell, items in cells
    ]
    result["occurrences"] = {
        o.occurrence_id: _occurrence_to_dict(o, user_id) for o in query["occurrences"]
    }
    if query["errors"]:
        result["errors"] = query["errors"]
    return result


@mcp.tool()
async def resolve_occurrence(user_id: int, occurrence_id: str, calendar: str) -> dict:
    """Resolve an occurrence (original or generated repeat) to its source event.

    Args:
        user_id: Viewing user
        occurrence_id: occurrence_id from list_occurrences
        calendar: Calendar name the occurrence came from
    """
    event, err = await _resolve(user_id, occurrence_id, calendar)
    if err:
        return err

    key = OccurrenceKey.parse(occurrence_id)
    return {
        "occurrence_id": occurrence_id,
        "is_generated": key is not None,
        "occurrence_start": key.start.isoformat() if key else None,
        "event": _event_to_dict(event),
        "permission": permission_of(event, user_id).value,
        "permission_label": permission_label(event, user_id),
        "can_edit": can_edit(event, user_id),
        "can_delete": can_delete(event, user_id),
        "can_share": can_share(event, user_id),
    }


@mcp.tool()
async def create_event(
    user_id: int,
    calendar: str,
    title: str,
    start: str,
    end: str,
    description: str = "",
    location: str = "",
    all_day: bool = False,
    priority: str = "medium",
    color: str = "",
) -> dict:
    """Create a new (non-recurring) event owned by the acting user.

    Args:
        user_id: Acting user, becomes the owner
        calendar: Calendar name (e.g. "work", "team")
        title: Event title
        start: Start date/time (ISO 8601, e.g. "2026-02-14T14:00:00Z")
        end: End date/time (ISO 8601, e.g. "2026-02-14T15:00:00Z")
        description: Event description (optional)
        location: Event location (optional)
        all_day: All-day event (optional)
        priority: "high", "medium" or "low"
        color: Display color overriding the priority color (optional)
    """
    err = _validate_calendar(calendar, user_id)
    if err:
        return err

    try:
        dt_start = _parse_datetime(start)
    except (ValueError, OverflowError):
        return {"error": f"Invalid start date: {start}"}
    try:
        dt_end = _parse_datetime(end)
    except (ValueError, OverflowError):
        return {"error": f"Invalid end date: {end}"}
    if dt_end < dt_start:
        return {"error": "End must not be before start"}
    try:
        fields: dict[str, Any] = {"priority": _parse_priority(priority)}
    except ValueError:
        return {"error": f"Invalid priority '{priority}'. Must be one of: {[p.value for p in Priority]}"}
    if description:
        fields["description"] = description
    if location:
        fields["location"] = location
    if color:
        fields["color"] = color
    if all_day:
        fields["all_day"] = True

    backend = _get_backend(calendar)
    if not backend:
        return {"error": f"Backend not available: {calendar}"}

    try:
        event = await backend.create_event(user_id, title, dt_start, dt_end, **fields)
    except Exception as e:
        return {"error": f"Failed to create event: {e}"}
    return {"success": True, "event": _event_to_dict(event)}


@mcp.tool()
async def update_occurrence(
    user_id: int,
    occurrence_id: str,
    calendar: str,
    title: str = "",
    start: str = "",
    end: str = "",
    description: str = "",
    location: str = "",
    priority: str = "",
    color: str = "",
    user_permissions: dict[str, str] | None = None,
) -> dict:
    """Update the event behind an occurrence. Only provided fields are changed.

    Editing a generated repeat edits the whole recurring series; a new start
    or end moves the series' first instance. Requires owner, edit or admin
    permission. Only the owner may change user_permissions.

    Args:
        user_id: Acting user
        occurrence_id: occurrence_id from list_occurrences
        calendar: Calendar name the occurrence came from
        title: New title (optional)
        start: New start date/time (optional)
        end: New end date/time (optional)
        description: New description (optional)
        location: New location (optional)
        priority: New priority, "high", "medium" or "low" (optional)
        color: New display color (optional)
        user_permissions: Sharing grants, e.g. {"2": "edit", "3": "view"} (optional)
    """
    fields: dict[str, Any] = {}
    if title:
        fields["title"] = title
    if start:
        try:
            fields["start"] = _parse_datetime(start)
        except (ValueError, OverflowError):
            return {"error": f"Invalid start date: {start}"}
    if end:
        try:
            fields["end"] = _parse_datetime(end)
        except (ValueError, OverflowError):
            return {"error": f"Invalid end date: {end}"}
    if description:
        fields["description"] = description
    if location:
        fields["location"] = location
    if priority:
        try:
            fields["priority"] = _parse_priority(priority)
        except ValueError:
            return {"error": f"Invalid priority '{priority}'. Must be one of: {[p.value for p in Priority]}"}
    if color:
        fields["color"] = color
    if user_permissions is not None:
        try:
            fields["user_permissions"] = _parse_permissions(user_permissions)
        except ValueError:
            return {"error": f"Invalid user_permissions: {user_permissions}"}

    if not fields:
        return {"error": "No fields to update"}

    event, err = await _resolve(user_id, occurrence_id, calendar)
    if err:
        return err
    if not can_edit(event, user_id):
        return {"error": f"User {user_id} may not edit event {event.id}"}
    if "user_permissions" in fields and not can_share(event, user_id):
        return {"error": f"User {user_id} may not change sharing of event {event.id}"}
    new_start = fields.get("start", event.start)
    new_end = fields.get("end", event.end)
    if new_start is not None and new_end is not None and new_end < new_start:
        return {"error": "End must not be before start"}

    backend = _get_backend(calendar)
    try:
        updated = await backend.update_event(user_id, event.id, **fields)
    except Exception as e:
        return {"error": f"Failed to update event: {e}"}
    return {
        "success": True,
        "updated_event_id": event.id,
        "is_generated": OccurrenceKey.parse(occurrence_id) is not None,
        "event": _event_to_dict(updated),
    }


@mcp.tool()
async def delete_occurrence(user_id: int, occurrence_id: str, calendar: str) -> dict:
    """Delete the event behind an occurrence.

    Deleting a generated repeat deletes the whole recurring series; single
    occurrences cannot be detached. Requires owner or admin permission.

    Args:
        user_id: Acting user
        occurrence_id: occurrence_id from list_occurrences
        calendar: Calendar name the occurrence came from
    """
    event, err = await _resolve(user_id, occurrence_id, calendar)
    if err:
        return err
    if not can_delete(event, user_id):
        return {"error": f"User {user_id} may not delete event {event.id}"}

    backend = _get_backend(calendar)
    try:
        success = await backend.delete_event(user_id, event.id)
    except Exception as e:
        return {"error": f"Failed to delete event: {e}"}
    if not success:
        return {"error": f"Event not found: {event.id}"}
    return {
        "success": True,
        "deleted_event_id": event.id,
        "message": f"Event deleted from {calendar}",
    }


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main():
    """Entry point for console script and python -m."""
    global _accounts

    _accounts = load_config()
    if _accounts:
        logger.info("Loaded %d calendar(s): %s", len(_accounts), list(_accounts.keys()))
    else:
        logger.warning("No calendars loaded (CALENDAR_CONFIG=%s)", os.environ.get("CALENDAR_CONFIG", ""))
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
