"""Viewer-dependent visibility and permission evaluation.

Everything here is a pure function of already-fetched data. Functions accept
either an Occurrence or an Event; occurrences are judged by their source event.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, TypeVar, Union

from .backends.base import Event, Permission, Priority, UserId
from .expander import Occurrence

T = TypeVar("T", Occurrence, Event)
Item = Union[Occurrence, Event]


@dataclass(frozen=True)
class FilterOptions:
    show_own: bool = True
    show_shared: bool = True
    show_high_priority: bool = True
    show_medium_priority: bool = True
    show_low_priority: bool = True

    def priority_enabled(self, priority: Priority) -> bool:
        if priority is Priority.HIGH:
            return self.show_high_priority
        if priority is Priority.LOW:
            return self.show_low_priority
        return self.show_medium_priority


def _event(item: Item) -> Event:
    return item.event if isinstance(item, Occurrence) else item


def is_owner(item: Item, viewer_id: UserId) -> bool:
    owner_id = _event(item).owner_id
    return owner_id is not None and owner_id == viewer_id


def permission_of(item: Item, viewer_id: UserId) -> Permission:
    """Owners hold implicit admin; everyone else gets their grant, default view."""
    if is_owner(item, viewer_id):
        return Permission.ADMIN
    return _event(item).user_permissions.get(viewer_id, Permission.VIEW)


def is_visible(item: Item, viewer_id: UserId, options: FilterOptions | None = None) -> bool:
    options = options or FilterOptions()
    owner = is_owner(item, viewer_id)
    if owner and not options.show_own:
        return False
    if not owner and not options.show_shared:
        return False
    return options.priority_enabled(_event(item).priority)


def filter_visible(items: Iterable[T], viewer_id: UserId, options: FilterOptions | None = None) -> list[T]:
    return [item for item in items if is_visible(item, viewer_id, options)]


# Capabilities of the event context menu. Edit/delete on a generated
# occurrence always act on the whole series.

def can_edit(item: Item, viewer_id: UserId) -> bool:
    return permission_of(item, viewer_id) in (Permission.EDIT, Permission.ADMIN)


def can_delete(item: Item, viewer_id: UserId) -> bool:
    return permission_of(item, viewer_id) is Permission.ADMIN


def can_share(item: Item, viewer_id: UserId) -> bool:
    return is_owner(item, viewer_id)


def permission_label(item: Item, viewer_id: UserId) -> str:
    if is_owner(item, viewer_id):
        return "owner"
    return permission_of(item, viewer_id).value
