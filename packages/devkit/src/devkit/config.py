from __future__ import annotations

from pydantic_settings import BaseSettings, SettingsConfigDict

from devkit.timezone import resolve_zone


class DeliverySettings(BaseSettings):
    model_config = SettingsConfigDict(extra="ignore")

    SERVICE_NAME: str = "venue-delivery"
    REMOTE_API_BASE_URL: str | None = None
    REMOTE_API_KEY: str | None = None
    REMOTE_TIMEOUT_SECONDS: float = 30.0
    REDIS_URL: str | None = None
    KAFKA_BOOTSTRAP_SERVERS: str | None = None
    CHANGE_TOPIC: str = "venue-changes"
    CHANGE_DLQ_TOPIC: str = "venue-changes-dlq"
    CHANGE_CONSUMER_GROUP: str = "venue-change-consumer"
    LOCAL_TIMEZONE: str = "Australia/Sydney"
    GATE_MAX_IN_FLIGHT: int = 8
    GATE_MAX_RETRIES: int = 3
    GATE_BASE_DELAY_SECONDS: float = 1.0
    GATE_MAX_DELAY_SECONDS: float = 30.0
    DURABLE_CACHE_PATH: str | None = None
    DURABLE_CACHE_TTL_SECONDS: int = 600
    EVENT_DEDUP_TTL_SECONDS: int = 3600


def load_settings(service_name: str) -> DeliverySettings:
    settings = DeliverySettings(SERVICE_NAME=service_name)
    # fail fast on a misspelt zone rather than at the first filter evaluation
    resolve_zone(settings.LOCAL_TIMEZONE)
    return settings
