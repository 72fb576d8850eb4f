"""Phased acquisition of one entity collection.

A mounted collection is served from the durable cache first, then from a
minimal-field fetch (HIGH priority) and a complete fetch (NORMAL priority),
each submitted through the ``ScheduleGate``. Supplementary collections load at
LOW priority once details are requested. Every change is published as an
immutable ``CollectionView`` to watchers.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Coroutine, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from devkit.observability import get_tracer
from venue_engine.filters import FilterContext, group_by_entity
from venue_engine.models import Brewery, ListMembership, ScheduleRecord, TimeWindowRecord, Venue, VenueEvent

from data_delivery.cache import DurableCache, PhaseCache
from data_delivery.core.metrics import InMemoryDeliveryMetricsCollector
from data_delivery.core.models import (
    BASIC,
    COMPLETE,
    DAILY_SPECIALS,
    EVENTS,
    HAPPY_HOURS,
    SCHEDULES,
    SUPPLEMENTARY_PREFIX,
    supplementary_phase,
)
from data_delivery.core.records import (
    normalize_rows,
    parse_basic_venue,
    parse_complete_venue,
    parse_event,
    parse_schedule,
    parse_time_window,
)
from data_delivery.gate import HIGH, LOW, NORMAL, ScheduleGate
from data_delivery.invalidation import ANY_EVENT, InvalidationEvent, InvalidationFanout, SubscriptionScope

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

EMPTY = "empty"
CACHE_HYDRATED = "cache_hydrated"
BASIC_LOADED = "basic_loaded"
COMPLETE_LOADED = "complete_loaded"
_STATE_RANK = {EMPTY: 0, CACHE_HYDRATED: 1, BASIC_LOADED: 2, COMPLETE_LOADED: 3}

_PRIMARY = "primary"

Rows = list[dict[str, Any]]
Fetcher = Callable[[], Awaitable[Rows]]
SupplementaryFetcher = Callable[[Sequence[str]], Awaitable[Rows]]
Watcher = Callable[["CollectionView"], None]

_SUPPLEMENTARY_PARSERS: dict[str, Callable[[Mapping[str, Any]], Any]] = {
    SCHEDULES: parse_schedule,
    HAPPY_HOURS: parse_time_window,
    DAILY_SPECIALS: parse_time_window,
    EVENTS: parse_event,
}


@dataclass(frozen=True)
class CollectionSource:
    kind: str
    fetch_basic: Fetcher
    fetch_complete: Fetcher
    supplementary: Mapping[str, SupplementaryFetcher] = field(default_factory=dict)


@dataclass(frozen=True)
class CollectionView:
    kind: str
    state: str
    data: tuple[Venue, ...] = ()
    is_loading: bool = False
    is_loading_details: bool = False
    error: BaseException | None = None
    schedules: tuple[ScheduleRecord, ...] = ()
    happy_hours: tuple[TimeWindowRecord, ...] = ()
    daily_specials: tuple[TimeWindowRecord, ...] = ()
    events: tuple[VenueEvent, ...] = ()
    loaded_supplementary: frozenset[str] = frozenset()
    failed_supplementary: frozenset[str] = frozenset()


class ProgressiveLoader:
    def __init__(
        self,
        source: CollectionSource,
        gate: ScheduleGate,
        fanout: InvalidationFanout,
        durable_cache: DurableCache | None = None,
        *,
        metrics: InMemoryDeliveryMetricsCollector | None = None,
        clock: Callable[[], datetime] | None = None,
        timer: Callable[[], float] = time.perf_counter,
    ) -> None:
        self._source = source
        self._gate = gate
        self._fanout = fanout
        self._durable_cache = durable_cache
        self._metrics = metrics
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._timer = timer
        self._phase_cache = PhaseCache(source.kind, clock=self._clock)

        self._generation = 0
        self._mounted = False
        self._scope: SubscriptionScope | None = None
        self._primary_done = asyncio.Event()
        self._state = EMPTY
        self._data: tuple[Venue, ...] = ()
        self._error: BaseException | None = None
        self._supplementary: dict[str, tuple[Any, ...]] = {}
        self._failed_supplementary: set[str] = set()
        self._requested: set[str] = set()
        self._loading: set[str] = set()
        self._active: set[str] = set()
        self._rerun: set[str] = set()
        self._tasks: set[asyncio.Task[None]] = set()
        self._watchers: list[Watcher] = []

    @property
    def kind(self) -> str:
        return self._source.kind

    @property
    def mounted(self) -> bool:
        return self._mounted

    @property
    def phase_cache(self) -> PhaseCache:
        return self._phase_cache

    def view(self) -> CollectionView:
        supplementary_loading = any(phase.startswith(SUPPLEMENTARY_PREFIX) for phase in self._loading)
        return CollectionView(
            kind=self.kind,
            state=self._state,
            data=self._data,
            is_loading=BASIC in self._loading or COMPLETE in self._loading,
            is_loading_details=supplementary_loading,
            error=self._error,
            schedules=self._supplementary.get(SCHEDULES, ()),
            happy_hours=self._supplementary.get(HAPPY_HOURS, ()),
            daily_specials=self._supplementary.get(DAILY_SPECIALS, ()),
            events=self._supplementary.get(EVENTS, ()),
            loaded_supplementary=frozenset(self._supplementary),
            failed_supplementary=frozenset(self._failed_supplementary),
        )

    def mount(self) -> CollectionView:
        """Expose the durable snapshot now and start the primary phases in the background."""
        if self._mounted:
            return self.view()
        self._generation += 1
        self._mounted = True
        self._primary_done = asyncio.Event()
        self._hydrate_from_durable_cache()

        self._fanout.bind(self._phase_cache)
        self._scope = self._fanout.scope()
        self._scope.subscribe(ANY_EVENT, self._on_invalidated)

        logger.info("collection_mounted", extra={"kind": self.kind, "state": self._state})
        self._start(_PRIMARY)
        for kind in sorted(self._requested):
            self._start(kind)
        return self.view()

    def unmount(self) -> None:
        if not self._mounted:
            return
        self._generation += 1
        self._mounted = False
        if self._scope is not None:
            self._scope.close()
            self._scope = None
        self._fanout.unbind(self.kind)
        self._phase_cache.clear_in_flight()
        self._primary_done.set()
        self._loading.clear()
        self._active.clear()
        self._rerun.clear()
        logger.info("collection_unmounted", extra={"kind": self.kind})

    def request_details(self, kinds: Iterable[str] | None = None) -> CollectionView:
        wanted = list(self._source.supplementary) if kinds is None else list(kinds)
        for kind in wanted:
            if kind not in self._source.supplementary:
                raise KeyError(f"unknown supplementary collection: {kind}")
            if kind in self._requested:
                continue
            self._requested.add(kind)
            if self._mounted:
                self._start(kind)
        return self.view()

    def refetch(self) -> None:
        if not self._mounted:
            return
        self._error = None
        self._start(_PRIMARY)
        for kind in sorted(self._requested):
            self._failed_supplementary.discard(kind)
            self._start(kind)

    def watch(self, callback: Watcher) -> Callable[[], None]:
        self._watchers.append(callback)

        def unwatch() -> None:
            if callback in self._watchers:
                self._watchers.remove(callback)

        return unwatch

    async def settle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def filter_context(
        self,
        now: datetime,
        memberships: Sequence[ListMembership] = (),
        breweries: Mapping[str, Brewery] | None = None,
    ) -> FilterContext:
        return FilterContext(
            now=now,
            schedules=group_by_entity(self._supplementary.get(SCHEDULES, ())),
            happy_hours=group_by_entity(self._supplementary.get(HAPPY_HOURS, ())),
            daily_specials=group_by_entity(self._supplementary.get(DAILY_SPECIALS, ())),
            events=group_by_entity(self._supplementary.get(EVENTS, ())),
            memberships=tuple(memberships),
            breweries=dict(breweries or {}),
        )

    def _hydrate_from_durable_cache(self) -> None:
        if self._durable_cache is None or _STATE_RANK[self._state] > _STATE_RANK[EMPTY]:
            return
        rows = self._durable_cache.get(self.kind)
        if not rows:
            return
        normalized = normalize_rows(self.kind, rows, parse_basic_venue)
        self._data = tuple(normalized.records)
        self._state = CACHE_HYDRATED
        logger.debug("collection_cache_hydrated", extra={"kind": self.kind, "count": len(self._data)})

    def _start(self, group: str) -> None:
        if group in self._active:
            self._rerun.add(group)
            return
        self._active.add(group)
        self._spawn(self._drive(group, self._generation))

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _drive(self, group: str, generation: int) -> None:
        try:
            while True:
                self._rerun.discard(group)
                if group == _PRIMARY:
                    await self._load_primary(generation)
                else:
                    await self._load_supplementary(group, generation)
                if generation != self._generation or group not in self._rerun:
                    break
                logger.debug("collection_phase_rerun", extra={"kind": self.kind, "group": group})
        finally:
            if generation == self._generation:
                self._active.discard(group)

    async def _load_primary(self, generation: int) -> None:
        try:
            basic = await self._run_phase(BASIC, HIGH, self._source.fetch_basic, parse_basic_venue, generation)
            if basic:
                await self._run_phase(COMPLETE, NORMAL, self._source.fetch_complete, parse_complete_venue, generation)
        finally:
            if generation == self._generation:
                self._primary_done.set()
        if generation == self._generation:
            self._refresh_outgrown_details()

    async def _run_phase(
        self,
        phase: str,
        priority: int,
        fetcher: Fetcher,
        parse: Callable[[Mapping[str, Any]], Venue],
        generation: int,
    ) -> list[Venue] | None:
        started = self._timer()
        fetched_at: list[datetime] = []

        async def fetch() -> Rows:
            fetched_at.append(self._clock())
            if generation == self._generation:
                self._phase_cache.begin_fetch(phase, fetched_at[-1])
            return await fetcher()

        self._loading.add(phase)
        self._emit()
        try:
            with tracer.start_as_current_span(
                "progressive_loader.phase",
                attributes={"collection.kind": self.kind, "collection.phase": phase},
            ):
                rows = await self._gate.submit(fetch, priority)
        except Exception as exc:
            if generation != self._generation:
                return None
            self._phase_cache.end_fetch(phase)
            self._loading.discard(phase)
            self._error = exc
            self._observe(phase, "failed", started)
            logger.warning(
                "collection_phase_failed",
                extra={"kind": self.kind, "phase": phase, "state": self._state, "error": repr(exc)},
            )
            self._emit()
            return None

        if generation != self._generation:
            return None
        normalized = normalize_rows(self.kind, rows, parse)
        if self._metrics:
            self._metrics.add_dropped_records(self.kind, normalized.dropped_count)
        self._phase_cache.put(phase, normalized.records, fetched_at=fetched_at[-1] if fetched_at else None)

        if phase == BASIC:
            if self._durable_cache is not None:
                self._durable_cache.set(self.kind, normalized.rows)
            if _STATE_RANK[self._state] < _STATE_RANK[COMPLETE_LOADED]:
                self._data = tuple(normalized.records)
                self._state = BASIC_LOADED
        else:
            self._data = tuple(normalized.records)
            self._state = COMPLETE_LOADED

        self._loading.discard(phase)
        self._error = None
        self._observe(phase, "succeeded", started)
        logger.info(
            "collection_phase_loaded",
            extra={"kind": self.kind, "phase": phase, "count": len(normalized.records), "state": self._state},
        )
        self._emit()
        return normalized.records

    async def _load_supplementary(self, kind: str, generation: int) -> None:
        await self._primary_done.wait()
        if generation != self._generation:
            return
        phase = supplementary_phase(kind)
        entity_ids = sorted({venue.id for venue in self._data})
        fetcher = self._source.supplementary[kind]
        started = self._timer()
        fetched_at: list[datetime] = []

        async def fetch() -> Rows:
            fetched_at.append(self._clock())
            if generation == self._generation:
                self._phase_cache.begin_fetch(phase, fetched_at[-1], scope=entity_ids)
            return await fetcher(entity_ids)

        self._loading.add(phase)
        self._emit()
        try:
            rows = await self._gate.submit(fetch, LOW) if entity_ids else []
        except Exception as exc:
            if generation != self._generation:
                return
            self._phase_cache.end_fetch(phase)
            self._loading.discard(phase)
            self._failed_supplementary.add(kind)
            self._observe(phase, "failed", started)
            logger.warning(
                "collection_details_failed",
                extra={"kind": self.kind, "details": kind, "error": repr(exc)},
            )
            self._emit()
            return

        if generation != self._generation:
            return
        normalized = normalize_rows(f"{self.kind}:{kind}", rows, _SUPPLEMENTARY_PARSERS[kind])
        if self._metrics:
            self._metrics.add_dropped_records(kind, normalized.dropped_count)
        self._phase_cache.put(
            phase,
            normalized.records,
            fetched_at=fetched_at[-1] if fetched_at else None,
            scope=entity_ids,
        )
        self._supplementary[kind] = tuple(normalized.records)
        self._failed_supplementary.discard(kind)
        self._loading.discard(phase)
        self._observe(phase, "succeeded", started)
        self._emit()

    def _refresh_outgrown_details(self) -> None:
        """Re-request details whose entity scope no longer covers the loaded collection."""
        current = {venue.id for venue in self._data}
        for kind in sorted(self._requested):
            entry = self._phase_cache.get(supplementary_phase(kind))
            if entry is not None and entry.scope is not None and not current <= entry.scope:
                self._start(kind)

    def _on_invalidated(self, event: InvalidationEvent) -> None:
        if not self._mounted:
            return
        stale = event.stale_phases(self.kind)
        if not stale:
            return
        logger.info(
            "collection_revalidating",
            extra={"kind": self.kind, "phases": ",".join(stale), "event_kind": event.notification.event_kind},
        )
        if BASIC in stale or COMPLETE in stale:
            self._start(_PRIMARY)
        for phase in stale:
            if not phase.startswith(SUPPLEMENTARY_PREFIX):
                continue
            kind = phase[len(SUPPLEMENTARY_PREFIX):]
            if kind in self._requested:
                self._start(kind)

    def _observe(self, phase: str, status: str, started: float) -> None:
        if self._metrics:
            self._metrics.observe_phase(self.kind, phase, status, (self._timer() - started) * 1000)

    def _emit(self) -> None:
        if not self._watchers:
            return
        view = self.view()
        for watcher in list(self._watchers):
            try:
                watcher(view)
            except Exception:
                logger.exception("collection_watcher_failed", extra={"kind": self.kind})
