from __future__ import annotations

from collections.abc import Sequence

from data_delivery.core.models import DAILY_SPECIALS, EVENTS, HAPPY_HOURS, SCHEDULES
from data_delivery.core.records import BASIC_VENUE_COLUMNS
from data_delivery.loader import CollectionSource, Rows, SupplementaryFetcher
from data_delivery.remote import RemoteDataClient, is_in, not_null

VENUES = "venues"
ID_BATCH_SIZE = 100

SUPPLEMENTARY_TABLES = {
    SCHEDULES: ("venue_hours", "day_of_week.asc"),
    HAPPY_HOURS: ("venue_happy_hours", "day_of_week.asc"),
    DAILY_SPECIALS: ("venue_daily_specials", "day_of_week.asc"),
    EVENTS: ("venue_events", "start_time.asc"),
}


def venue_collection_source(client: RemoteDataClient, batch_size: int = ID_BATCH_SIZE) -> CollectionSource:
    """Venues restricted to geocoded rows, plus their schedule-like tables."""
    geocoded = (not_null("latitude"), not_null("longitude"))
    return CollectionSource(
        kind=VENUES,
        fetch_basic=client.query(VENUES, BASIC_VENUE_COLUMNS, geocoded, order="name.asc"),
        fetch_complete=client.query(VENUES, "*", geocoded, order="name.asc"),
        supplementary={
            kind: _by_venue_ids(client, table, order, batch_size)
            for kind, (table, order) in SUPPLEMENTARY_TABLES.items()
        },
    )


def _by_venue_ids(client: RemoteDataClient, table: str, order: str, batch_size: int) -> SupplementaryFetcher:
    async def fetch(venue_ids: Sequence[str]) -> Rows:
        rows: Rows = []
        for start in range(0, len(venue_ids), batch_size):
            batch = venue_ids[start:start + batch_size]
            rows.extend(await client.select(table, "*", (is_in("venue_id", batch),), order=order))
        return rows

    return fetch
