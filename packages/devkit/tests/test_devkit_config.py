from zoneinfo import ZoneInfoNotFoundError

import pytest

from devkit.config import load_settings


def test_load_settings_reads_env(monkeypatch) -> None:
    monkeypatch.setenv("REMOTE_API_BASE_URL", "https://api.example.com")
    monkeypatch.setenv("GATE_MAX_IN_FLIGHT", "4")
    monkeypatch.setenv("LOCAL_TIMEZONE", "Australia/Melbourne")
    settings = load_settings("venue-map")

    assert settings.SERVICE_NAME == "venue-map"
    assert settings.REMOTE_API_BASE_URL == "https://api.example.com"
    assert settings.GATE_MAX_IN_FLIGHT == 4
    assert settings.LOCAL_TIMEZONE == "Australia/Melbourne"


def test_load_settings_defaults(monkeypatch) -> None:
    monkeypatch.delenv("GATE_MAX_RETRIES", raising=False)
    monkeypatch.delenv("LOCAL_TIMEZONE", raising=False)
    settings = load_settings("venue-map")

    assert settings.GATE_MAX_RETRIES == 3
    assert settings.GATE_BASE_DELAY_SECONDS == 1.0
    assert settings.DURABLE_CACHE_TTL_SECONDS == 600


def test_load_settings_rejects_unknown_zone(monkeypatch) -> None:
    monkeypatch.setenv("LOCAL_TIMEZONE", "Nowhere/Atlantis")
    with pytest.raises((ZoneInfoNotFoundError, ValueError)):
        load_settings("venue-map")
