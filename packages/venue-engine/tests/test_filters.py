from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo

from venue_engine.filters import (
    DAILY_SPECIAL,
    EVENTS,
    HAPPY_HOUR,
    KITCHEN_OPEN,
    OPEN_NOW,
    VERIFIED_BREWERIES,
    FilterContext,
    FilterEngine,
    apply_filters,
    group_by_entity,
    is_entity_open,
    membership_filter_id,
)
from venue_engine.models import Brewery, ListMembership, ScheduleRecord, TimeWindowRecord, Venue, VenueEvent

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=ZoneInfo("Australia/Sydney"))
TODAY = NOW.weekday()


def _venue(venue_id: str, lat: float | None = -33.86, lng: float | None = 151.2, brewery_id: str | None = None) -> Venue:
    return Venue(id=venue_id, name=f"Venue {venue_id}", lat=lat, lng=lng, brewery_id=brewery_id)


def _context(**kwargs) -> FilterContext:
    return FilterContext(now=NOW, **kwargs)


def test_empty_filter_set_is_identity() -> None:
    venues = [_venue("a"), _venue("b", lat=None, lng=None)]
    result = apply_filters(venues, [], _context())

    assert result is venues


def test_open_now_keeps_only_open_venue() -> None:
    venues = [_venue("a"), _venue("b")]
    schedules = group_by_entity(
        [
            ScheduleRecord(entity_id="a", day_of_week=TODAY, open_time="11:00", close_time="22:00"),
            ScheduleRecord(entity_id="b", day_of_week=TODAY, open_time="16:00", close_time="22:00"),
        ]
    )
    result = apply_filters(venues, [OPEN_NOW], _context(schedules=schedules))

    assert [venue.id for venue in result] == ["a"]


def test_missing_coordinates_excluded_when_filtering() -> None:
    venues = [_venue("a", lat=None), _venue("b")]
    result = apply_filters(venues, [membership_filter_id("L")], _context(
        memberships=[ListMembership("L", "a"), ListMembership("L", "b")],
    ))

    assert [venue.id for venue in result] == ["b"]


def test_completed_membership_does_not_match() -> None:
    venues = [_venue("e")]
    context = _context(memberships=[ListMembership(list_id="L", entity_id="e", is_completed=True)])

    assert apply_filters(venues, [membership_filter_id("L")], context) == []


def test_membership_filters_are_or_combined_and_anded_with_standard() -> None:
    venues = [_venue("a"), _venue("b"), _venue("c")]
    context = _context(
        memberships=[ListMembership("L1", "a"), ListMembership("L2", "b"), ListMembership("L2", "c")],
        happy_hours=group_by_entity(
            [
                TimeWindowRecord(entity_id="a", day_of_week=TODAY),
                TimeWindowRecord(entity_id="b", day_of_week=TODAY),
            ]
        ),
    )
    either_list = apply_filters(venues, [membership_filter_id("L1"), membership_filter_id("L2")], context)
    with_happy_hour = apply_filters(
        venues, [membership_filter_id("L1"), membership_filter_id("L2"), HAPPY_HOUR], context
    )

    assert [venue.id for venue in either_list] == ["a", "b", "c"]
    assert [venue.id for venue in with_happy_hour] == ["a", "b"]


def test_standard_filters_are_and_combined() -> None:
    venues = [_venue("a"), _venue("b")]
    context = _context(
        schedules=group_by_entity(
            [
                ScheduleRecord(
                    entity_id="a",
                    day_of_week=TODAY,
                    open_time="10:00",
                    close_time="23:00",
                    kitchen_open_time="11:00",
                    kitchen_close_time="15:00",
                ),
                ScheduleRecord(entity_id="b", day_of_week=TODAY, open_time="10:00", close_time="23:00"),
            ]
        ),
    )
    assert [v.id for v in apply_filters(venues, [OPEN_NOW], context)] == ["a", "b"]
    assert [v.id for v in apply_filters(venues, [OPEN_NOW, KITCHEN_OPEN], context)] == ["a"]


def test_supplementary_filters_default_to_no_match() -> None:
    venues = [_venue("a")]
    for filter_id in (OPEN_NOW, KITCHEN_OPEN, HAPPY_HOUR, DAILY_SPECIAL, EVENTS, VERIFIED_BREWERIES):
        assert apply_filters(venues, [filter_id], _context()) == []


def test_events_and_brewery_filters() -> None:
    venues = [_venue("a", brewery_id="br-1"), _venue("b", brewery_id="br-2")]
    context = _context(
        events=group_by_entity(
            [VenueEvent(entity_id="b", title="Quiz", start_at=datetime(2026, 10, 19, 9, 0, tzinfo=timezone.utc))]
        ),
        breweries={
            "br-1": Brewery(id="br-1", name="One", is_verified=True),
            "br-2": Brewery(id="br-2", name="Two"),
        },
    )
    assert [v.id for v in apply_filters(venues, [EVENTS], context)] == ["b"]
    assert [v.id for v in apply_filters(venues, [VERIFIED_BREWERIES], context)] == ["a"]


def test_unknown_filter_does_not_restrict() -> None:
    venues = [_venue("a")]
    assert apply_filters(venues, ["dog-friendly"], _context()) == venues


def test_custom_engine_catalogue() -> None:
    engine = FilterEngine({"named-a": lambda venue, _: venue.id == "a"})
    assert [v.id for v in engine.apply([_venue("a"), _venue("b")], ["named-a"], _context())] == ["a"]


def test_is_entity_open_sibling() -> None:
    context = _context(
        schedules=group_by_entity([ScheduleRecord(entity_id="a", day_of_week=TODAY, open_time="11:00", close_time="13:00")])
    )
    assert is_entity_open(_venue("a"), context) is True
    assert is_entity_open(_venue("b"), context) is False
