"""YAML file backend: a static list of event records on disk."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import os
import uuid
from datetime import datetime
from typing import Any

import yaml

from ..records import RecordError, event_from_record, record_from_fields
from .base import Event, EventBatch, UserId, check_editable, split_by_owner

logger = logging.getLogger("shared-calendar-mcp")


class FileEventSource:
    """Event source reading camelCase event records from a YAML file.

    The file holds either a list of records or a mapping with an ``events``
    key. Records without an owner are attributed to the calendar's owner_id.
    """

    def __init__(self, calendar_name: str, config: dict[str, Any], owner_id: int | None = None):
        self._name = calendar_name
        self._path = config["path"]
        self._owner_id = owner_id

    def _load_raw(self) -> tuple[Any, list[dict[str, Any]]]:
        if not os.path.isfile(self._path):
            raise ValueError(f"Calendar '{self._name}': events file not found: {self._path}")
        with open(self._path, "r") as f:
            raw = yaml.safe_load(f) or []
        records = raw.get("events", []) if isinstance(raw, dict) else raw
        return raw, list(records or [])

    def _save_raw(self, raw: Any, records: list[dict[str, Any]]) -> None:
        if isinstance(raw, dict):
            raw["events"] = records
        else:
            raw = records
        with open(self._path, "w") as f:
            yaml.safe_dump(raw, f, sort_keys=False, allow_unicode=True)

    def _to_event(self, record: dict[str, Any]) -> Event:
        event = event_from_record(record, source=self._name)
        if event.owner_id is None and self._owner_id is not None:
            event = dataclasses.replace(event, owner_id=self._owner_id)
        return event

    def _load_events(self) -> list[Event]:
        _, records = self._load_raw()
        events = []
        for record in records:
            try:
                events.append(self._to_event(record))
            except RecordError as e:
                logger.warning("Calendar '%s': skipping record: %s", self._name, e)
        return events

    def _list_events_sync(self, user_id: UserId, start: datetime, end: datetime) -> EventBatch:
        candidates = []
        for event in self._load_events():
            # Events with unusable timestamps are passed on; expansion skips them
            if event.start is not None and event.start > end:
                continue
            if event.end is not None and event.end < start and not event.is_recurring:
                continue
            candidates.append(event)
        return split_by_owner(candidates, user_id)

    def _get_event_sync(self, event_id: str) -> Event:
        for event in self._load_events():
            if event.id == event_id:
                return event
        raise ValueError(f"Event not found: {event_id}")

    def _delete_event_sync(self, event_id: str) -> bool:
        raw, records = self._load_raw()
        remaining = [r for r in records if str(r.get("id")) != event_id]
        if len(remaining) == len(records):
            return False
        self._save_raw(raw, remaining)
        logger.info("File event deleted: %s in '%s'", event_id, self._name)
        return True

    def _create_event_sync(
        self, user_id: UserId, title: str, start: datetime, end: datetime, fields: dict[str, Any]
    ) -> Event:
        check_editable(fields)
        raw, records = self._load_raw()
        record = {"id": uuid.uuid4().hex, "ownerId": user_id}
        record.update(record_from_fields({"title": title, "start": start, "end": end, **fields}))
        records.append(record)
        self._save_raw(raw, records)
        logger.info("File event created: %s in '%s'", record["id"], self._name)
        return self._to_event(record)

    def _update_event_sync(self, event_id: str, fields: dict[str, Any]) -> Event:
        check_editable(fields)
        raw, records = self._load_raw()
        for record in records:
            if str(record.get("id")) == event_id:
                record.update(record_from_fields(fields))
                self._save_raw(raw, records)
                logger.info("File event updated: %s in '%s'", event_id, self._name)
                return self._to_event(record)
        raise ValueError(f"Event not found: {event_id}")

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
