"""YAML configuration loading for event sources."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any

import yaml

logger = logging.getLogger("shared-calendar-mcp")

CONFIG_PATH = os.environ.get("CALENDAR_CONFIG", "/config/calendar_sources.yaml")
BUFFER_DAYS = int(os.environ.get("CALENDAR_BUFFER_DAYS", "7"))

VALID_VISIBILITIES = {"shared", "owner"}

# Required type-specific keys per source type
REQUIRED_KEYS: dict[str, tuple[str, ...]] = {
    "rest": ("base_url",),
    "file": ("path",),
    "caldav": ("url", "username_env", "password_env"),
}
VALID_TYPES = set(REQUIRED_KEYS)

_META_KEYS = ("name", "label", "type", "visibility", "owner_id")


@dataclass
class CalendarAccount:
    """A single event source configuration."""

    name: str
    label: str
    type: str  # rest, file, caldav
    config: dict[str, Any] = field(default_factory=dict)
    visibility: str = "shared"  # "shared" | "owner"
    owner_id: int | None = None  # owner of every event in file/caldav sources


def _parse_owner_id(name: str, raw: Any) -> int | None:
    if raw is None:
        return None
    try:
        return int(raw)
    except (TypeError, ValueError):
        raise ValueError(f"Calendar '{name}': 'owner_id' must be an integer, got {raw!r}") from None


def _parse_entry(entry: dict[str, Any]) -> CalendarAccount:
    name = str(entry.get("name") or "").strip()
    if not name:
        raise ValueError("Calendar missing 'name' field")

    source_type = str(entry.get("type") or "").strip().lower()
    if source_type not in REQUIRED_KEYS:
        raise ValueError(
            f"Calendar '{name}': unknown type '{source_type}'. Must be one of: {sorted(VALID_TYPES)}"
        )

    visibility = entry.get("visibility", "shared")
    if visibility not in VALID_VISIBILITIES:
        raise ValueError(
            f"Calendar '{name}': invalid visibility '{visibility}'. "
            f"Must be one of: {sorted(VALID_VISIBILITIES)}"
        )
    owner_id = _parse_owner_id(name, entry.get("owner_id"))

    settings = {k: v for k, v in entry.items() if k not in _META_KEYS}
    missing = [key for key in REQUIRED_KEYS[source_type] if key not in settings]
    if missing:
        raise ValueError(f"Calendar '{name}' ({source_type}): {', '.join(repr(k) for k in missing)} required")

    if owner_id is None:
        if visibility == "owner":
            raise ValueError(f"Calendar '{name}': visibility 'owner' requires 'owner_id'")
        if source_type == "caldav":
            raise ValueError(f"Calendar '{name}' (caldav): 'owner_id' is required")
        if source_type == "file":
            logger.warning("Calendar '%s': no 'owner_id', records must carry their own owner", name)

    if source_type == "caldav":
        unset = [settings[k] for k in ("username_env", "password_env") if not os.environ.get(settings[k])]
        for env_var in unset:
            logger.warning("Calendar '%s': env var '%s' not set", name, env_var)

    return CalendarAccount(
        name=name,
        label=entry.get("label", name),
        type=source_type,
        config=settings,
        visibility=visibility,
        owner_id=owner_id,
    )


def load_config() -> dict[str, CalendarAccount]:
    """Load and validate the calendar sources YAML.

    Returns dict of name -> CalendarAccount. A missing file or a file
    without a ``calendars`` key yields no sources; an invalid entry raises
    ValueError naming the calendar.
    """
    path = CONFIG_PATH
    if not os.path.isfile(path):
        logger.warning("Config file not found: %s", path)
        return {}

    with open(path, "r") as f:
        raw = yaml.safe_load(f)

    if not raw or "calendars" not in raw:
        logger.warning("No 'calendars' key in config file")
        return {}

    accounts: dict[str, CalendarAccount] = {}
    for entry in raw["calendars"] or []:
        account = _parse_entry(entry)
        if account.name in accounts:
            raise ValueError(f"Duplicate calendar name: '{account.name}'")
        accounts[account.name] = account
    return accounts
