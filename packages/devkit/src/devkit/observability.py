from __future__ import annotations

import logging
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider

_configured = False
_logging_configured = False

# attributes every LogRecord carries; anything else arrived through ``extra=``
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", logging.INFO, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


class ExtraFieldsFormatter(logging.Formatter):
    def __init__(self, fmt: str = "%(asctime)s %(levelname)s %(name)s %(message)s") -> None:
        super().__init__(fmt)

    @staticmethod
    def extra_fields(record: logging.LogRecord) -> dict[str, Any]:
        return {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = self.extra_fields(record)
        if not fields:
            return base
        rendered = " ".join(f"{key}={fields[key]}" for key in sorted(fields))
        return f"{base} {rendered}"


def configure_logging(level: int | str = logging.INFO) -> None:
    global _logging_configured
    root = logging.getLogger()
    root.setLevel(level)
    if _logging_configured:
        return
    handler = logging.StreamHandler()
    handler.setFormatter(ExtraFieldsFormatter())
    root.addHandler(handler)
    _logging_configured = True


def configure_otel(service_name: str) -> None:
    global _configured
    if _configured:
        return
    provider = TracerProvider(resource=Resource.create({"service.name": service_name}))
    trace.set_tracer_provider(provider)
    _configured = True


def get_tracer(name: str) -> trace.Tracer:
    return trace.get_tracer(name)
