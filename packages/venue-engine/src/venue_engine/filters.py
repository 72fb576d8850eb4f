from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol, TypeVar

from venue_engine.models import Brewery, ListMembership, ScheduleRecord, TimeWindowRecord, Venue, VenueEvent
from venue_engine.temporal import has_event_today, is_kitchen_open, is_open, is_window_active

logger = logging.getLogger(__name__)

OPEN_NOW = "open-now"
KITCHEN_OPEN = "kitchen-open"
HAPPY_HOUR = "happy-hour"
DAILY_SPECIAL = "daily-special"
EVENTS = "events"
VERIFIED_BREWERIES = "verified-breweries"
INDEPENDENT_BREWERIES = "independent-breweries"
MEMBERSHIP_PREFIX = "todo-list-"

R = TypeVar("R", bound="_EntityKeyed")


class _EntityKeyed(Protocol):
    @property
    def entity_id(self) -> str: ...


@dataclass(frozen=True)
class FilterContext:
    now: datetime
    schedules: Mapping[str, Sequence[ScheduleRecord]] = field(default_factory=dict)
    happy_hours: Mapping[str, Sequence[TimeWindowRecord]] = field(default_factory=dict)
    daily_specials: Mapping[str, Sequence[TimeWindowRecord]] = field(default_factory=dict)
    events: Mapping[str, Sequence[VenueEvent]] = field(default_factory=dict)
    memberships: Sequence[ListMembership] = ()
    breweries: Mapping[str, Brewery] = field(default_factory=dict)


StandardPredicate = Callable[[Venue, FilterContext], bool]


def group_by_entity(records: Iterable[R]) -> dict[str, list[R]]:
    grouped: dict[str, list[R]] = defaultdict(list)
    for record in records:
        grouped[record.entity_id].append(record)
    return dict(grouped)


def membership_filter_id(list_id: str) -> str:
    return f"{MEMBERSHIP_PREFIX}{list_id}"


def _brewery(venue: Venue, context: FilterContext) -> Brewery | None:
    if venue.brewery_id is None:
        return None
    return context.breweries.get(venue.brewery_id)


def _open_now(venue: Venue, context: FilterContext) -> bool:
    return is_open(context.schedules.get(venue.id, ()), context.now).is_open


def _kitchen_open(venue: Venue, context: FilterContext) -> bool:
    return is_kitchen_open(context.schedules.get(venue.id, ()), context.now).is_open


def _happy_hour(venue: Venue, context: FilterContext) -> bool:
    return is_window_active(context.happy_hours.get(venue.id, ()), context.now)


def _daily_special(venue: Venue, context: FilterContext) -> bool:
    return is_window_active(context.daily_specials.get(venue.id, ()), context.now)


def _event_today(venue: Venue, context: FilterContext) -> bool:
    return has_event_today(context.events.get(venue.id, ()), context.now)


def _verified(venue: Venue, context: FilterContext) -> bool:
    brewery = _brewery(venue, context)
    return brewery is not None and brewery.is_verified


def _independent(venue: Venue, context: FilterContext) -> bool:
    brewery = _brewery(venue, context)
    return brewery is not None and brewery.is_independent


STANDARD_FILTERS: dict[str, StandardPredicate] = {
    OPEN_NOW: _open_now,
    KITCHEN_OPEN: _kitchen_open,
    HAPPY_HOUR: _happy_hour,
    DAILY_SPECIAL: _daily_special,
    EVENTS: _event_today,
    VERIFIED_BREWERIES: _verified,
    INDEPENDENT_BREWERIES: _independent,
}


class FilterEngine:
    """AND-combination of standard filters with an OR group of list memberships."""

    def __init__(self, standard_filters: Mapping[str, StandardPredicate] | None = None) -> None:
        self._standard = dict(STANDARD_FILTERS if standard_filters is None else standard_filters)

    def apply(
        self,
        entities: Sequence[Venue],
        active_filter_ids: Iterable[str],
        context: FilterContext,
    ) -> Sequence[Venue]:
        active = list(dict.fromkeys(active_filter_ids))
        if not active:
            return entities

        list_ids = [f[len(MEMBERSHIP_PREFIX):] for f in active if f.startswith(MEMBERSHIP_PREFIX)]
        predicates: list[StandardPredicate] = []
        for filter_id in active:
            if filter_id.startswith(MEMBERSHIP_PREFIX):
                continue
            predicate = self._standard.get(filter_id)
            if predicate is None:
                logger.debug("filter_unknown_ignored", extra={"filter_id": filter_id})
                continue
            predicates.append(predicate)

        pending_by_list = self._pending_memberships(context.memberships, list_ids)
        return [
            entity
            for entity in entities
            if entity.has_coordinates
            and (not list_ids or any(entity.id in pending_by_list[list_id] for list_id in list_ids))
            and all(predicate(entity, context) for predicate in predicates)
        ]

    @staticmethod
    def _pending_memberships(
        memberships: Sequence[ListMembership],
        list_ids: Sequence[str],
    ) -> dict[str, set[str]]:
        wanted = set(list_ids)
        pending: dict[str, set[str]] = {list_id: set() for list_id in wanted}
        for item in memberships:
            if item.list_id in wanted and not item.is_completed:
                pending[item.list_id].add(item.entity_id)
        return pending


_default_engine = FilterEngine()


def apply_filters(
    entities: Sequence[Venue],
    active_filter_ids: Iterable[str],
    context: FilterContext,
) -> Sequence[Venue]:
    return _default_engine.apply(entities, active_filter_ids, context)


def is_entity_open(entity: Venue, context: FilterContext) -> bool:
    return _open_now(entity, context)


def is_entity_kitchen_open(entity: Venue, context: FilterContext) -> bool:
    return _kitchen_open(entity, context)


def is_entity_in_happy_hour(entity: Venue, context: FilterContext) -> bool:
    return _happy_hour(entity, context)


def has_entity_daily_special(entity: Venue, context: FilterContext) -> bool:
    return _daily_special(entity, context)


def has_entity_event_today(entity: Venue, context: FilterContext) -> bool:
    return _event_today(entity, context)
