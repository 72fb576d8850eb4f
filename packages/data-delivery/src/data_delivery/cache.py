from __future__ import annotations

import json
import logging
import os
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from data_delivery.core.models import CacheEntry

logger = logging.getLogger(__name__)

CACHE_FORMAT_VERSION = "1.0.0"
DEFAULT_TTL_SECONDS = 600

Collection = list[dict[str, Any]]


class DurableCache(ABC):
    """Local first-paint cache keyed by collection kind.

    Reads are synchronous so that mounting a collection never waits on I/O
    slower than local storage.
    """

    @abstractmethod
    def get(self, kind: str) -> Collection | None:
        raise NotImplementedError

    @abstractmethod
    def set(self, kind: str, collection: Collection) -> None:
        raise NotImplementedError

    @abstractmethod
    def clear(self) -> None:
        raise NotImplementedError


class InMemoryDurableCache(DurableCache):
    def __init__(
        self,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._items: dict[str, tuple[float, Collection]] = {}

    def get(self, kind: str) -> Collection | None:
        item = self._items.get(kind)
        if not item:
            return None
        stored_at, collection = item
        if self._clock() - stored_at > self._ttl_seconds:
            self._items.pop(kind, None)
            return None
        return [dict(row) for row in collection]

    def set(self, kind: str, collection: Collection) -> None:
        self._items[kind] = (self._clock(), [dict(row) for row in collection])

    def clear(self) -> None:
        self._items.clear()


class FileDurableCache(DurableCache):
    """JSON document per collection kind, stamped with a format version.

    Expired or version-mismatched documents read as absent; unreadable ones are
    logged and treated the same way.
    """

    def __init__(
        self,
        directory: str | os.PathLike[str],
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
        version: str = CACHE_FORMAT_VERSION,
    ) -> None:
        self._directory = Path(directory)
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._version = version

    def get(self, kind: str) -> Collection | None:
        path = self._path(kind)
        if not path.exists():
            return None
        try:
            document = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            logger.warning("durable_cache_unreadable", extra={"kind": kind, "path": str(path)})
            return None
        if not isinstance(document, dict) or document.get("version") != self._version:
            return None
        timestamp = document.get("timestamp")
        if not isinstance(timestamp, (int, float)) or self._clock() - timestamp > self._ttl_seconds:
            return None
        data = document.get("data")
        if not isinstance(data, list):
            return None
        return [row for row in data if isinstance(row, dict)]

    def set(self, kind: str, collection: Collection) -> None:
        self._directory.mkdir(parents=True, exist_ok=True)
        document = {"version": self._version, "timestamp": self._clock(), "data": collection}
        path = self._path(kind)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(document, ensure_ascii=True, default=str), encoding="utf-8")
        os.replace(tmp_path, path)

    def clear(self) -> None:
        if not self._directory.exists():
            return
        for path in self._directory.glob("*.json"):
            path.unlink(missing_ok=True)

    def _path(self, kind: str) -> Path:
        safe = "".join(ch if ch.isalnum() or ch in "-_" else "_" for ch in kind)
        return self._directory / f"{safe}.json"


@dataclass
class _InFlightFetch:
    dispatched_at: datetime
    scope: frozenset[str] | None = None
    superseded: bool = False


class PhaseCache:
    """In-memory phase entries for one collection plus their staleness flags.

    A phase whose fetch is in flight also remembers when that fetch was
    dispatched. A change committed after the dispatch supersedes the fetch, and
    the entry it produces is stored already stale.
    """

    def __init__(self, kind: str, clock: Callable[[], datetime] | None = None) -> None:
        self.kind = kind
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._entries: dict[str, CacheEntry] = {}
        self._in_flight: dict[str, _InFlightFetch] = {}

    def get(self, phase: str) -> CacheEntry | None:
        return self._entries.get(phase)

    def begin_fetch(
        self,
        phase: str,
        dispatched_at: datetime | None = None,
        scope: Iterable[str] | None = None,
    ) -> None:
        self._in_flight[phase] = _InFlightFetch(
            dispatched_at=dispatched_at or self._clock(),
            scope=frozenset(scope) if scope is not None else None,
        )

    def end_fetch(self, phase: str) -> None:
        self._in_flight.pop(phase, None)

    def clear_in_flight(self) -> None:
        self._in_flight.clear()

    def put(
        self,
        phase: str,
        records: Sequence[Any],
        fetched_at: datetime | None = None,
        scope: Iterable[str] | None = None,
    ) -> CacheEntry:
        in_flight = self._in_flight.pop(phase, None)
        entry = CacheEntry(
            phase=phase,
            records=tuple(records),
            fetched_at=fetched_at or self._clock(),
            is_stale=in_flight is not None and in_flight.superseded,
            scope=frozenset(scope) if scope is not None else None,
        )
        self._entries[phase] = entry
        return entry

    def mark_stale(
        self,
        phase: str,
        changed_at: datetime | None = None,
        entity_id: str | None = None,
    ) -> bool:
        """Flag ``phase`` stale; ``True`` only when the change is news.

        That is a fresh entry turning stale, or an in-flight fetch being
        superseded for the first time. Entries fetched for a known set of entity
        ids ignore changes to other entities, and a change committed before the
        entry was fetched is already reflected in it.
        """
        transitioned = False
        entry = self._entries.get(phase)
        if entry is not None and not entry.is_stale and _affects(entry.fetched_at, entry.scope, changed_at, entity_id):
            self._entries[phase] = replace(entry, is_stale=True)
            transitioned = True
        in_flight = self._in_flight.get(phase)
        if (
            in_flight is not None
            and not in_flight.superseded
            and _affects(in_flight.dispatched_at, in_flight.scope, changed_at, entity_id)
        ):
            in_flight.superseded = True
            transitioned = True
        return transitioned

    def is_stale(self, phase: str) -> bool:
        entry = self._entries.get(phase)
        return entry is not None and entry.is_stale

    def phases(self) -> list[str]:
        return list(self._entries)


def _affects(
    fetched_at: datetime,
    scope: frozenset[str] | None,
    changed_at: datetime | None,
    entity_id: str | None,
) -> bool:
    if entity_id is not None and scope is not None and entity_id not in scope:
        return False
    return changed_at is None or _comparable(changed_at) > _comparable(fetched_at)


def _comparable(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
