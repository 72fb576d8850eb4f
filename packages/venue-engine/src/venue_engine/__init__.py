"""Venue records, weekly schedule evaluation and venue filtering."""

from venue_engine.filters import (
    FilterContext,
    FilterEngine,
    apply_filters,
    group_by_entity,
    has_entity_daily_special,
    has_entity_event_today,
    is_entity_in_happy_hour,
    is_entity_kitchen_open,
    is_entity_open,
    membership_filter_id,
)
from venue_engine.models import (
    Brewery,
    ListMembership,
    OpenStatus,
    ScheduleRecord,
    TimeWindowRecord,
    Venue,
    VenueEvent,
)
from venue_engine.temporal import has_event_today, is_kitchen_open, is_open, is_window_active

__all__ = [
    "Brewery",
    "FilterContext",
    "FilterEngine",
    "ListMembership",
    "OpenStatus",
    "ScheduleRecord",
    "TimeWindowRecord",
    "Venue",
    "VenueEvent",
    "apply_filters",
    "group_by_entity",
    "has_entity_daily_special",
    "has_entity_event_today",
    "has_event_today",
    "is_entity_in_happy_hour",
    "is_entity_kitchen_open",
    "is_entity_open",
    "is_kitchen_open",
    "is_open",
    "is_window_active",
    "membership_filter_id",
]
