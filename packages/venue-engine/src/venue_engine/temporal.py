"""Point-in-time evaluation of weekly schedules and daily time windows.

Every function here is pure: the answer depends only on the records and the
``now`` passed in. Times are zero-padded 24-hour strings, compared as ``HH:MM``
text, with the opening boundary inclusive and the closing boundary exclusive.

A window whose close time sorts before its open time runs past midnight: the
record's own day covers ``[open, 24:00)`` and the following day covers
``[00:00, close)``.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date, datetime

from venue_engine.models import CLOSED, OpenStatus, ScheduleRecord, TimeWindowRecord, VenueEvent


def day_of_week(now: datetime) -> int:
    return now.weekday()


def previous_day(day: int) -> int:
    return (day - 1) % 7


def clock_time(now: datetime) -> str:
    return now.strftime("%H:%M")


def normalize_time(value: str | None) -> str | None:
    if not value:
        return None
    text = value.strip()[:5]
    if len(text) != 5 or text[2] != ":" or not (text[:2].isdigit() and text[3:].isdigit()):
        return None
    return text


def todays_schedule(schedule: Sequence[ScheduleRecord], now: datetime) -> ScheduleRecord | None:
    return _first_for_day(schedule, day_of_week(now))


def is_open(schedule: Sequence[ScheduleRecord], now: datetime) -> OpenStatus:
    return _status(schedule, now, kitchen=False)


def is_kitchen_open(schedule: Sequence[ScheduleRecord], now: datetime) -> OpenStatus:
    return _status(schedule, now, kitchen=True)


def is_window_active(windows: Iterable[TimeWindowRecord], now: datetime) -> bool:
    today = day_of_week(now)
    yesterday = previous_day(today)
    current = clock_time(now)
    for window in windows:
        if not window.is_active:
            continue
        start = normalize_time(window.start_time)
        end = normalize_time(window.end_time)
        if window.day_of_week == today:
            if _in_same_day_part(start, end, current):
                return True
        elif window.day_of_week == yesterday and _in_carry_over_part(start, end, current):
            return True
    return False


def has_event_today(events: Iterable[VenueEvent], now: datetime) -> bool:
    today = now.date()
    return any(_local_date(event.start_at, now) == today for event in events)


def events_on(events: Iterable[VenueEvent], day: date, now: datetime) -> list[VenueEvent]:
    return sorted(
        (event for event in events if _local_date(event.start_at, now) == day),
        key=lambda event: event.start_at,
    )


def format_time_12h(value: str | None) -> str:
    normalized = normalize_time(value)
    if normalized is None:
        return ""
    hours, minutes = int(normalized[:2]), int(normalized[3:])
    period = "PM" if hours >= 12 else "AM"
    return f"{hours % 12 or 12}:{minutes:02d} {period}"


def _status(schedule: Sequence[ScheduleRecord], now: datetime, kitchen: bool) -> OpenStatus:
    today = day_of_week(now)
    current = clock_time(now)

    record = _first_for_day(schedule, today)
    if record is not None and not record.is_closed:
        opens_at, closes_at = _window(record, kitchen)
        if opens_at is not None and closes_at is not None and _in_same_day_part(opens_at, closes_at, current):
            return OpenStatus(is_open=True, opens_at=opens_at, closes_at=closes_at)

    carried = _first_for_day(schedule, previous_day(today))
    if carried is not None and not carried.is_closed:
        opens_at, closes_at = _window(carried, kitchen)
        if opens_at is not None and closes_at is not None and _in_carry_over_part(opens_at, closes_at, current):
            return OpenStatus(is_open=True, opens_at=opens_at, closes_at=closes_at)

    if record is None or record.is_closed:
        return CLOSED
    opens_at, closes_at = _window(record, kitchen)
    return OpenStatus(is_open=False, opens_at=opens_at, closes_at=closes_at)


def _window(record: ScheduleRecord, kitchen: bool) -> tuple[str | None, str | None]:
    if kitchen:
        return normalize_time(record.kitchen_open_time), normalize_time(record.kitchen_close_time)
    return normalize_time(record.open_time), normalize_time(record.close_time)


def _first_for_day(schedule: Sequence[ScheduleRecord], day: int) -> ScheduleRecord | None:
    # first record wins when a day has several
    for record in schedule:
        if record.day_of_week == day:
            return record
    return None


def _in_same_day_part(start: str | None, end: str | None, current: str) -> bool:
    if start is not None and end is not None and end < start:
        return current >= start
    if start is not None and current < start:
        return False
    if end is not None and current >= end:
        return False
    return True


def _in_carry_over_part(start: str | None, end: str | None, current: str) -> bool:
    if start is None or end is None or end >= start:
        return False
    return current < end


def _local_date(value: datetime, now: datetime) -> date:
    if value.tzinfo is not None and now.tzinfo is not None:
        return value.astimezone(now.tzinfo).date()
    return value.date()
