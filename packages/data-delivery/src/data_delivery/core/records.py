from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, TypeVar

from venue_engine.models import ListMembership, ScheduleRecord, TimeWindowRecord, Venue, VenueEvent

from data_delivery.core.exceptions import DataShapeError

T = TypeVar("T")
Row = Mapping[str, Any]
logger = logging.getLogger(__name__)

BASIC_VENUE_COLUMNS = ("id", "name", "brewery_id", "latitude", "longitude", "city", "state")
_VENUE_DETAIL_COLUMNS = ("street", "postal_code", "country", "phone", "website_url")


@dataclass(frozen=True)
class NormalizedRows(Generic[T]):
    records: list[T]
    rows: list[dict[str, Any]]
    dropped_count: int


def normalize_rows(kind: str, rows: Iterable[Row], parse: Callable[[Row], T]) -> NormalizedRows[T]:
    records: list[T] = []
    kept: list[dict[str, Any]] = []
    dropped = 0
    for row in rows:
        try:
            records.append(parse(row))
        except DataShapeError as exc:
            dropped += 1
            logger.warning(
                "record_dropped",
                extra={"kind": kind, "record_id": _row_id(row), "reason": str(exc)},
            )
            continue
        kept.append(dict(row))
    return NormalizedRows(records=records, rows=kept, dropped_count=dropped)


def parse_basic_venue(row: Row) -> Venue:
    return _parse_venue(row, complete=False)


def parse_complete_venue(row: Row) -> Venue:
    return _parse_venue(row, complete=True)


def parse_schedule(row: Row) -> ScheduleRecord:
    return ScheduleRecord(
        entity_id=_required_str(row, "venue_id"),
        day_of_week=_day_of_week(row),
        open_time=_optional_str(row, "venue_open_time"),
        close_time=_optional_str(row, "venue_close_time"),
        is_closed=bool(row.get("is_closed", False)),
        kitchen_open_time=_optional_str(row, "kitchen_open_time"),
        kitchen_close_time=_optional_str(row, "kitchen_close_time"),
    )


def parse_time_window(row: Row) -> TimeWindowRecord:
    return TimeWindowRecord(
        entity_id=_required_str(row, "venue_id"),
        day_of_week=_day_of_week(row),
        start_time=_optional_str(row, "start_time"),
        end_time=_optional_str(row, "end_time"),
        is_active=bool(row.get("is_active", True)),
        description=_optional_str(row, "description"),
    )


def parse_event(row: Row) -> VenueEvent:
    start_at = _timestamp(row, "start_time")
    if start_at is None:
        raise DataShapeError("missing required field: start_time")
    return VenueEvent(
        entity_id=_required_str(row, "venue_id"),
        title=str(row.get("title") or ""),
        start_at=start_at,
        end_at=_timestamp(row, "end_time"),
        id=_optional_str(row, "id"),
    )


def parse_membership(row: Row) -> ListMembership:
    return ListMembership(
        list_id=_required_str(row, "todo_list_id"),
        entity_id=_required_str(row, "venue_id"),
        is_completed=bool(row.get("is_completed", False)),
    )


def _parse_venue(row: Row, complete: bool) -> Venue:
    detail: dict[str, str | None] = {}
    if complete:
        detail = {column: _optional_str(row, column) for column in _VENUE_DETAIL_COLUMNS}
    known = set(BASIC_VENUE_COLUMNS) | set(_VENUE_DETAIL_COLUMNS)
    return Venue(
        id=_required_str(row, "id"),
        name=str(row.get("name") or "").strip(),
        brewery_id=_optional_str(row, "brewery_id"),
        lat=_coordinate(row, "latitude", 90.0),
        lng=_coordinate(row, "longitude", 180.0),
        city=_optional_str(row, "city"),
        state=_optional_str(row, "state"),
        is_complete=complete,
        extra={key: value for key, value in row.items() if key not in known} if complete else {},
        **detail,
    )


def _required_str(row: Row, key: str) -> str:
    value = row.get(key)
    if value is None or not str(value).strip():
        raise DataShapeError(f"missing required field: {key}")
    return str(value)


def _optional_str(row: Row, key: str) -> str | None:
    value = row.get(key)
    if value is None:
        return None
    return str(value)


def _day_of_week(row: Row) -> int:
    value = row.get("day_of_week")
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 6:
        raise DataShapeError(f"invalid day_of_week: {value!r}")
    return value


def _coordinate(row: Row, key: str, limit: float) -> float | None:
    value = row.get(key)
    if value is None or value == "":
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise DataShapeError(f"invalid {key}: {value!r}") from exc
    if not -limit <= parsed <= limit:
        raise DataShapeError(f"{key} out of range: {parsed}")
    return parsed


def _timestamp(row: Row, key: str) -> datetime | None:
    value = row.get(key)
    if value is None:
        return None
    if isinstance(value, datetime):
        return value
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise DataShapeError(f"invalid {key}: {value!r}") from exc


def _row_id(row: Row) -> str:
    return str(row.get("id") or row.get("venue_id") or "")
