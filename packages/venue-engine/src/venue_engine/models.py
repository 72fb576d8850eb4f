from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

MONDAY = 0
SUNDAY = 6
DAYS_OF_WEEK = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


@dataclass(frozen=True)
class Venue:
    id: str
    name: str
    brewery_id: str | None = None
    lat: float | None = None
    lng: float | None = None
    city: str | None = None
    state: str | None = None
    street: str | None = None
    postal_code: str | None = None
    country: str | None = None
    phone: str | None = None
    website_url: str | None = None
    is_complete: bool = False
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def has_coordinates(self) -> bool:
        return self.lat is not None and self.lng is not None


@dataclass(frozen=True)
class Brewery:
    id: str
    name: str
    is_verified: bool = False
    is_independent: bool = False


@dataclass(frozen=True)
class ScheduleRecord:
    entity_id: str
    day_of_week: int
    open_time: str | None = None
    close_time: str | None = None
    is_closed: bool = False
    kitchen_open_time: str | None = None
    kitchen_close_time: str | None = None


@dataclass(frozen=True)
class TimeWindowRecord:
    """Happy hour or daily special for one day of the week.

    A window with neither ``start_time`` nor ``end_time`` is active all day.
    """

    entity_id: str
    day_of_week: int
    start_time: str | None = None
    end_time: str | None = None
    is_active: bool = True
    description: str | None = None


@dataclass(frozen=True)
class VenueEvent:
    entity_id: str
    title: str
    start_at: datetime
    end_at: datetime | None = None
    id: str | None = None


@dataclass(frozen=True)
class ListMembership:
    list_id: str
    entity_id: str
    is_completed: bool = False


@dataclass(frozen=True)
class OpenStatus:
    is_open: bool
    opens_at: str | None = None
    closes_at: str | None = None


CLOSED = OpenStatus(is_open=False)
