"""Common runtime devkit for settings, logging and local time."""

from devkit.config import DeliverySettings, load_settings
from devkit.observability import configure_logging, configure_otel, get_tracer
from devkit.timezone import now_local, resolve_zone

__all__ = [
    "DeliverySettings",
    "configure_logging",
    "configure_otel",
    "get_tracer",
    "load_settings",
    "now_local",
    "resolve_zone",
]
