from __future__ import annotations

import asyncio

import httpx


class DeliveryError(Exception):
    """Base data delivery exception."""


class TransientError(DeliveryError):
    """Raised when a remote call failed in a way that may succeed on retry."""


class PermanentError(DeliveryError):
    """Raised when a remote call failed and retrying cannot help."""


class DataShapeError(DeliveryError):
    """Raised when a single record cannot be normalized."""


class GateClosedError(DeliveryError):
    """Raised when work is submitted to, or still queued in, a shut-down gate."""


_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    TransientError,
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionResetError,
    httpx.TimeoutException,
    httpx.NetworkError,
)


def is_transient(exc: BaseException) -> bool:
    return isinstance(exc, _TRANSIENT_TYPES)
