from __future__ import annotations

from datetime import datetime
from functools import lru_cache
from zoneinfo import ZoneInfo

DEFAULT_ZONE_NAME = "Australia/Sydney"


@lru_cache(maxsize=32)
def resolve_zone(name: str | None = None) -> ZoneInfo:
    return ZoneInfo(name or DEFAULT_ZONE_NAME)


def now_local(zone: ZoneInfo | str | None = None) -> datetime:
    if isinstance(zone, ZoneInfo):
        return datetime.now(zone)
    return datetime.now(resolve_zone(zone))

