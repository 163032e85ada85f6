"""Base types and protocol for event sources."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping, Protocol, runtime_checkable

UserId = int


class RecurrenceType(str, Enum):
    NONE = "none"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    YEARLY = "yearly"


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Permission(str, Enum):
    VIEW = "view"
    EDIT = "edit"
    ADMIN = "admin"


PRIORITY_COLORS = {
    Priority.HIGH: "#FF5252",
    Priority.MEDIUM: "#FFC107",
    Priority.LOW: "#4CAF50",
}
DEFAULT_COLOR = "#2196F3"


class SourceError(RuntimeError):
    """An event source could not fulfil a request."""


# Generated occurrence ids read "<source event id>-recurrence-<epoch millis>"
OCCURRENCE_ID_SEPARATOR = "-recurrence-"


def is_generated_id(value: str) -> bool:
    """True if ``value`` has the shape of a generated occurrence id."""
    source_id, sep, millis = value.rpartition(OCCURRENCE_ID_SEPARATOR)
    return bool(sep and source_id and millis.lstrip("-").isdigit())


@dataclass(frozen=True)
class Event:
    """A stored event as handed over by an event source.

    ``start``/``end`` are UTC-aware, or ``None`` when the stored value could
    not be parsed. The core treats an event as read-only input.
    """

    id: str
    owner_id: UserId | None
    title: str
    start: datetime | None
    end: datetime | None
    description: str = ""
    location: str = ""
    all_day: bool = False
    recurrence_type: RecurrenceType = RecurrenceType.NONE
    recurrence_end: datetime | None = None
    priority: Priority = Priority.MEDIUM
    color: str | None = None
    is_shared: bool = False
    shared_with: frozenset[UserId] = frozenset()
    user_permissions: dict[UserId, Permission] = field(default_factory=dict)
    source: str = ""  # Configured calendar name

    @property
    def is_recurring(self) -> bool:
        return self.recurrence_type is not RecurrenceType.NONE

    @property
    def display_color(self) -> str:
        if self.color:
            return self.color
        return PRIORITY_COLORS.get(self.priority, DEFAULT_COLOR)


@dataclass
class EventBatch:
    """Events fetched for one viewer, split by ownership."""

    owned: list[Event] = field(default_factory=list)
    shared: list[Event] = field(default_factory=list)

    def all(self) -> list[Event]:
        return [*self.owned, *self.shared]

    def extend(self, other: EventBatch) -> None:
        self.owned.extend(other.owned)
        self.shared.extend(other.shared)


# Event fields the host may set on create and update; the recurrence rule is not among them
EDITABLE_FIELDS = frozenset({
    "title", "start", "end", "description", "location", "all_day", "priority", "color", "user_permissions",
})


def check_editable(fields: Mapping[str, object]) -> None:
    unknown = sorted(set(fields) - EDITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Fields cannot be edited: {unknown}")


def split_by_owner(events: list[Event], user_id: UserId) -> EventBatch:
    """Split a source's events into the viewer's own and everyone else's."""
    batch = EventBatch()
    for event in events:
        if event.owner_id is not None and event.owner_id == user_id:
            batch.owned.append(event)
        else:
            batch.shared.append(event)
    return batch


@runtime_checkable
class EventSource(Protocol):
    """Protocol that all event sources must satisfy."""

    async def list_events(self, user_id: UserId, start: datetime, end: datetime) -> EventBatch: ...

    async def get_event(self, user_id: UserId, event_id: str) -> Event: ...

    async def create_event(
        self,
        user_id: UserId,
        title: str,
        start: datetime,
        end: datetime,
        **fields: object,
    ) -> Event: ...

    async def update_event(self, user_id: UserId, event_id: str, **fields: object) -> Event: ...

    async def delete_event(self, user_id: UserId, event_id: str) -> bool: ...
