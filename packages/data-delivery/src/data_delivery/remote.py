from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

import httpx

from devkit.config import DeliverySettings

from data_delivery.core.exceptions import PermanentError, TransientError

logger = logging.getLogger(__name__)

Rows = list[dict[str, Any]]

_TRANSIENT_STATUS = frozenset({408, 429, 502, 503, 504})


@dataclass(frozen=True)
class Filter:
    """One PostgREST column predicate, e.g. ``Filter("latitude", "not.is", "null")``."""

    column: str
    operator: str
    value: Any

    def to_param(self) -> tuple[str, str]:
        if self.operator == "in":
            joined = ",".join(_quote(item) for item in self.value)
            return self.column, f"in.({joined})"
        return self.column, f"{self.operator}.{self.value}"


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def is_in(column: str, values: Iterable[Any]) -> Filter:
    return Filter(column, "in", tuple(values))


def not_null(column: str) -> Filter:
    return Filter(column, "not.is", "null")


class RemoteDataClient:
    def __init__(
        self,
        base_url: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._client_factory = client_factory

    @classmethod
    def from_settings(
        cls,
        settings: DeliverySettings,
        client_factory: Callable[[], httpx.AsyncClient] | None = None,
    ) -> RemoteDataClient:
        if not settings.REMOTE_API_BASE_URL:
            raise ValueError("REMOTE_API_BASE_URL is not configured")
        return cls(
            base_url=settings.REMOTE_API_BASE_URL,
            api_key=settings.REMOTE_API_KEY,
            timeout_seconds=settings.REMOTE_TIMEOUT_SECONDS,
            client_factory=client_factory,
        )

    async def select(
        self,
        table: str,
        columns: Sequence[str] | str = "*",
        filters: Sequence[Filter] = (),
        order: str | None = None,
    ) -> Rows:
        params: list[tuple[str, str]] = [("select", columns if isinstance(columns, str) else ",".join(columns))]
        params.extend(item.to_param() for item in filters)
        if order:
            params.append(("order", order))
        return await self._request("GET", table, params=params)

    async def insert(self, table: str, rows: Mapping[str, Any] | Sequence[Mapping[str, Any]]) -> Rows:
        body = [dict(rows)] if isinstance(rows, Mapping) else [dict(row) for row in rows]
        return await self._request("POST", table, json=body)

    async def update(self, table: str, values: Mapping[str, Any], filters: Sequence[Filter]) -> Rows:
        if not filters:
            raise PermanentError(f"refusing to update every row of {table}")
        return await self._request("PATCH", table, params=[item.to_param() for item in filters], json=dict(values))

    async def delete(self, table: str, filters: Sequence[Filter]) -> Rows:
        if not filters:
            raise PermanentError(f"refusing to delete every row of {table}")
        return await self._request("DELETE", table, params=[item.to_param() for item in filters])

    def query(
        self,
        table: str,
        columns: Sequence[str] | str = "*",
        filters: Sequence[Filter] = (),
        order: str | None = None,
    ) -> Callable[[], Awaitable[Rows]]:
        """Zero-argument thunk running ``select``; each call issues a fresh request."""

        async def run() -> Rows:
            return await self.select(table, columns, filters, order)

        return run

    async def _request(
        self,
        method: str,
        table: str,
        params: list[tuple[str, str]] | None = None,
        json: Any = None,
    ) -> Rows:
        url = f"{self._base_url}/rest/v1/{table}"
        try:
            factory = self._client_factory or (lambda: httpx.AsyncClient(timeout=self._timeout_seconds))
            async with factory() as client:
                response = await client.request(method, url, params=params, json=json, headers=self._headers())
                response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise TransientError(f"{method} {table} timed out") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            logger.warning("remote_request_failed", extra={"method": method, "table": table, "status": status})
            if status in _TRANSIENT_STATUS:
                raise TransientError(f"{method} {table} returned {status}") from exc
            raise PermanentError(f"{method} {table} returned {status}") from exc
        except httpx.NetworkError as exc:
            raise TransientError(f"{method} {table} connection failed") from exc
        except httpx.HTTPError as exc:
            raise PermanentError(f"{method} {table} request failed") from exc

        if not response.content:
            return []
        try:
            payload = response.json()
        except ValueError as exc:
            raise PermanentError(f"{method} {table} returned a non-JSON body") from exc
        if isinstance(payload, dict):
            return [payload]
        if not isinstance(payload, list):
            raise PermanentError(f"{method} {table} returned an unexpected payload")
        return [row for row in payload if isinstance(row, dict)]

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/json", "Prefer": "return=representation"}
        if self._api_key:
            headers["apikey"] = self._api_key
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers


def _quote(value: Any) -> str:
    text = str(value)
    if any(ch in text for ch in ',()"'):
        escaped = text.replace('"', '\\"')
        return f'"{escaped}"'
    return text
