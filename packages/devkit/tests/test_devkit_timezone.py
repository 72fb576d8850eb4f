from zoneinfo import ZoneInfo

from devkit.timezone import now_local, resolve_zone


def test_now_local_is_zone_aware() -> None:
    now = now_local("Australia/Perth")
    assert now.tzinfo == ZoneInfo("Australia/Perth")


def test_resolve_zone_defaults() -> None:
    assert resolve_zone(None) == ZoneInfo("Australia/Sydney")
