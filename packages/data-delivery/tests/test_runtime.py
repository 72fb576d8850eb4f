import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest

from devkit.config import DeliverySettings

from data_delivery.cache import InMemoryDurableCache
from data_delivery.core.models import SCHEDULES, ChangeNotification
from data_delivery.invalidation import VENUE_HOURS_UPDATED
from data_delivery.loader import COMPLETE_LOADED, CollectionSource
from data_delivery.runtime import DeliveryRuntime, get_runtime, use_runtime
from venue_engine.filters import OPEN_NOW, membership_filter_id
from venue_engine.models import ListMembership

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=ZoneInfo("Australia/Sydney"))


def _source() -> CollectionSource:
    rows = [
        {"id": "v1", "name": "Open Early", "latitude": -33.86, "longitude": 151.2},
        {"id": "v2", "name": "Open Late", "latitude": -33.87, "longitude": 151.21},
        {"id": "v3", "name": "Not Geocoded", "latitude": None, "longitude": None},
    ]
    hours = [
        {"venue_id": "v1", "day_of_week": 0, "venue_open_time": "11:00", "venue_close_time": "22:00"},
        {"venue_id": "v2", "day_of_week": 0, "venue_open_time": "16:00", "venue_close_time": "23:00"},
        {"venue_id": "v3", "day_of_week": 0, "venue_open_time": "00:00", "venue_close_time": "23:59"},
    ]

    async def fetch() -> list[dict]:
        return list(rows)

    async def fetch_hours(venue_ids) -> list[dict]:
        return [row for row in hours if row["venue_id"] in venue_ids]

    return CollectionSource(kind="venues", fetch_basic=fetch, fetch_complete=fetch, supplementary={SCHEDULES: fetch_hours})


def _runtime() -> DeliveryRuntime:
    return DeliveryRuntime.create(
        DeliverySettings(GATE_MAX_IN_FLIGHT=2),
        sources=[_source()],
        durable_cache=InMemoryDurableCache(),
        clock=lambda: NOW,
    )


@pytest.mark.asyncio
async def test_use_collection_exposes_loaded_view() -> None:
    runtime = _runtime()
    handle = runtime.use_collection("venues")
    await handle.settle()

    assert handle.state == COMPLETE_LOADED
    assert len(handle.data) == 3
    assert handle.error is None
    assert runtime.use_collection("venues").data == handle.data
    await runtime.shutdown()


@pytest.mark.asyncio
async def test_apply_filters_uses_loaded_details() -> None:
    runtime = _runtime()
    handle = runtime.use_collection("venues")
    handle.request_details([SCHEDULES])
    await handle.settle()

    open_now = runtime.apply_filters("venues", [OPEN_NOW], NOW)
    unfiltered = runtime.apply_filters("venues", [])
    on_list = runtime.apply_filters(
        "venues",
        [membership_filter_id("L")],
        memberships=[ListMembership("L", "v1", is_completed=True), ListMembership("L", "v2")],
    )

    assert [venue.id for venue in open_now] == ["v1"]
    assert len(unfiltered) == 3
    assert [venue.id for venue in on_list] == ["v2"]
    assert runtime.is_entity_open("venues", handle.data[0]) is True
    assert runtime.is_kitchen_open("venues", handle.data[0]) is False
    assert runtime.is_happy_hour("venues", handle.data[0]) is False
    assert runtime.has_daily_special("venues", handle.data[0]) is False
    await runtime.shutdown()


@pytest.mark.asyncio
async def test_runtime_publish_refreshes_details() -> None:
    runtime = _runtime()
    handle = runtime.use_collection("venues")
    handle.request_details([SCHEDULES])
    await handle.settle()

    event = runtime.publish(ChangeNotification(VENUE_HOURS_UPDATED, "v2"))
    await handle.settle()

    assert event.stale_phases("venues") == ["supplementary:schedules"]
    assert handle.is_loading_details is False
    await runtime.shutdown()


@pytest.mark.asyncio
async def test_shutdown_releases_subscriptions_and_gate() -> None:
    runtime = _runtime()
    runtime.use_collection("venues")

    assert runtime.fanout.active_count() == 1
    await runtime.shutdown()

    assert runtime.fanout.active_count() == 0
    assert runtime.gate.closed
    assert runtime.closed
    with pytest.raises(RuntimeError):
        runtime.use_collection("venues")


@pytest.mark.asyncio
async def test_shutdown_with_details_pending_does_not_hang() -> None:
    runtime = _runtime()
    handle = runtime.use_collection("venues")
    handle.request_details([SCHEDULES])
    await asyncio.sleep(0)

    await asyncio.wait_for(runtime.shutdown(), 1.0)

    assert runtime.closed
    assert handle.is_loading_details is False
    assert runtime.fanout.active_count() == 0


@pytest.mark.asyncio
async def test_use_runtime_scopes_context_lookup() -> None:
    runtime = _runtime()

    with use_runtime(runtime):
        assert get_runtime() is runtime
    with pytest.raises(RuntimeError):
        get_runtime()
    await runtime.shutdown()


def test_unknown_collection_is_rejected() -> None:
    runtime = _runtime()

    with pytest.raises(KeyError):
        runtime.use_collection("breweries")
    with pytest.raises(KeyError):
        runtime.apply_filters("venues", [])


@pytest.mark.asyncio
async def test_release_and_register_collections() -> None:
    runtime = _runtime()
    runtime.use_collection("venues")

    with pytest.raises(ValueError):
        runtime.register_source(_source())
    runtime.release_collection("venues")
    assert runtime.fanout.active_count() == 0

    runtime.register_source(_source())
    handle = runtime.use_collection("venues")
    await handle.settle()
    assert len(handle.data) == 3
    assert runtime.has_event_today("venues", handle.data[0]) is False
    assert runtime.start_change_consumer() is None
    await runtime.shutdown()


@pytest.mark.asyncio
async def test_runtime_optimistic_store_shares_gate() -> None:
    runtime = _runtime()
    store = runtime.optimistic_store({"fav:v1": False})

    async def write() -> None:
        return None

    await store.apply("fav:v1", True, write)

    assert store.get("fav:v1") is True
    assert runtime.gate.stats().succeeded == 1
    await runtime.shutdown()
