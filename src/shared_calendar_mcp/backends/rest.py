"""Events REST API backend (ownedEvents/sharedEvents endpoint) via httpx."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx

from ..records import RecordError, event_from_record, format_timestamp, record_from_event, record_from_fields
from .base import Event, EventBatch, SourceError, UserId, check_editable

logger = logging.getLogger("shared-calendar-mcp")

DEFAULT_TIMEOUT = 10.0


class RestEventSource:
    """Event source backed by the calendar's HTTP events API."""

    def __init__(self, calendar_name: str, config: dict[str, Any], client: httpx.AsyncClient | None = None):
        self._name = calendar_name
        self._config = config
        self._base_url = str(config["base_url"]).rstrip("/")
        self._client = client  # Lazy init

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            timeout = float(self._config.get("timeout", DEFAULT_TIMEOUT))
            self._client = httpx.AsyncClient(timeout=timeout)
            logger.info("REST source ready: %s → %s", self._name, self._base_url)
        return self._client

    async def _request(
        self, method: str, url: str, params: dict[str, Any], json: dict[str, Any] | None = None
    ) -> httpx.Response:
        try:
            return await self._get_client().request(method, url, params=params, json=json)
        except httpx.HTTPError as e:
            raise SourceError(f"Calendar '{self._name}': request failed: {e}") from e

    def _raise_for_status(self, response: httpx.Response, action: str) -> Any:
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if not response.is_success:
            message = data.get("message") if isinstance(data, dict) else None
            raise SourceError(
                f"Calendar '{self._name}': failed to {action}: {message or f'HTTP {response.status_code}'}"
            )
        return data

    def _parse_records(self, records: Any) -> list[Event]:
        events = []
        for record in records or []:
            try:
                events.append(event_from_record(record, source=self._name))
            except RecordError as e:
                logger.warning("Calendar '%s': skipping record: %s", self._name, e)
        return events

    async def list_events(self, user_id: UserId, start: datetime, end: datetime) -> EventBatch:
        params = {"userId": user_id, "start": format_timestamp(start), "end": format_timestamp(end)}
        response = await self._request("GET", self._base_url, params)
        data = self._raise_for_status(response, "fetch events")
        return EventBatch(
            owned=self._parse_records(data.get("ownedEvents")),
            shared=self._parse_records(data.get("sharedEvents")),
        )

    async def get_event(self, user_id: UserId, event_id: str) -> Event:
        response = await self._request("GET", f"{self._base_url}/{event_id}", {"userId": user_id})
        if response.status_code == 404:
            raise ValueError(f"Event not found: {event_id}")
        return self._event_from_response(response, "fetch event", event_id)

    def _event_from_response(self, response: httpx.Response, action: str, event_id: str) -> Event:
        data = self._raise_for_status(response, action)
        try:
            return event_from_record(data, source=self._name)
        except RecordError as e:
            raise SourceError(f"Calendar '{self._name}': malformed event {event_id}: {e}") from e

    async def create_event(
        self, user_id: UserId, title: str, start: datetime, end: datetime, **fields: object
    ) -> Event:
        check_editable(fields)
        payload = record_from_fields({"title": title, "start": start, "end": end, **fields})
        response = await self._request("POST", self._base_url, {"userId": user_id}, json=payload)
        event = self._event_from_response(response, "create event", "(new)")
        logger.info("REST event created: %s in '%s'", event.id, self._name)
        return event

    async def update_event(self, user_id: UserId, event_id: str, **fields: object) -> Event:
        check_editable(fields)
        # PUT replaces the stored record, so unchanged fields are sent back as well
        payload = record_from_event(await self.get_event(user_id, event_id))
        payload.update(record_from_fields(fields))
        response = await self._request("PUT", f"{self._base_url}/{event_id}", {"userId": user_id}, json=payload)
        if response.status_code == 404:
            raise ValueError(f"Event not found: {event_id}")
        event = self._event_from_response(response, "update event", event_id)
        logger.info("REST event updated: %s in '%s'", event_id, self._name)
        return event

    async def delete_event(self, user_id: UserId, event_id: str) -> bool:
        response = await self._request("DELETE", f"{self._base_url}/{event_id}", {"userId": user_id})
        if response.status_code == 404:
            return False
        self._raise_for_status(response, "delete event")
        logger.info("REST event deleted: %s in '%s'", event_id, self._name)
        return True
