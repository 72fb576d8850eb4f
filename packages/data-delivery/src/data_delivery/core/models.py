from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

BASIC = "basic"
COMPLETE = "complete"
SUPPLEMENTARY_PREFIX = "supplementary:"

SCHEDULES = "schedules"
HAPPY_HOURS = "happy_hours"
DAILY_SPECIALS = "daily_specials"
EVENTS = "events"


def supplementary_phase(kind: str) -> str:
    return f"{SUPPLEMENTARY_PREFIX}{kind}"


@dataclass(frozen=True)
class CacheEntry:
    """One phase's records, replaced wholesale on every successful fetch."""

    phase: str
    records: tuple[Any, ...]
    fetched_at: datetime
    is_stale: bool = False
    scope: frozenset[str] | None = None


@dataclass(frozen=True)
class ChangeNotification:
    event_kind: str
    entity_id: str | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    event_id: str | None = None
    committed_at: datetime | None = None
