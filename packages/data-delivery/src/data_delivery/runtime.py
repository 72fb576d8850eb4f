"""Application-root ownership of the gate, fan-out, caches and loaders."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any

from devkit.config import DeliverySettings
from devkit.observability import configure_otel
from devkit.timezone import now_local
from venue_engine.filters import (
    FilterEngine,
    has_entity_daily_special,
    has_entity_event_today,
    is_entity_in_happy_hour,
    is_entity_kitchen_open,
    is_entity_open,
)
from venue_engine.models import Brewery, ListMembership, Venue

from data_delivery.cache import DurableCache, FileDurableCache, InMemoryDurableCache
from data_delivery.core.metrics import InMemoryDeliveryMetricsCollector
from data_delivery.core.models import ChangeNotification
from data_delivery.event_consumer import ChangeNotificationConsumer, EventConsumerConfig, build_dedup_store
from data_delivery.gate import GateConfig, ScheduleGate
from data_delivery.invalidation import InvalidationEvent, InvalidationFanout
from data_delivery.loader import CollectionSource, CollectionView, ProgressiveLoader, Watcher
from data_delivery.optimistic import OptimisticStore
from data_delivery.remote import RemoteDataClient
from data_delivery.sources import venue_collection_source

logger = logging.getLogger(__name__)

_current_runtime: ContextVar[DeliveryRuntime | None] = ContextVar("delivery_runtime", default=None)


class CollectionHandle:
    """Consumer-facing view of one mounted collection."""

    def __init__(self, loader: ProgressiveLoader) -> None:
        self._loader = loader

    @property
    def kind(self) -> str:
        return self._loader.kind

    @property
    def view(self) -> CollectionView:
        return self._loader.view()

    @property
    def data(self) -> tuple[Venue, ...]:
        return self.view.data

    @property
    def state(self) -> str:
        return self.view.state

    @property
    def is_loading(self) -> bool:
        return self.view.is_loading

    @property
    def is_loading_details(self) -> bool:
        return self.view.is_loading_details

    @property
    def error(self) -> BaseException | None:
        return self.view.error

    def refetch(self) -> None:
        self._loader.refetch()

    def request_details(self, kinds: Iterable[str] | None = None) -> CollectionView:
        return self._loader.request_details(kinds)

    def watch(self, callback: Watcher) -> Callable[[], None]:
        return self._loader.watch(callback)

    async def settle(self) -> None:
        await self._loader.settle()


class DeliveryRuntime:
    def __init__(
        self,
        settings: DeliverySettings,
        gate: ScheduleGate,
        fanout: InvalidationFanout,
        durable_cache: DurableCache | None,
        sources: Mapping[str, CollectionSource],
        metrics: InMemoryDeliveryMetricsCollector,
        filter_engine: FilterEngine | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = settings
        self.gate = gate
        self.fanout = fanout
        self.durable_cache = durable_cache
        self.metrics = metrics
        self._sources = dict(sources)
        self._filter_engine = filter_engine or FilterEngine()
        self._clock = clock or (lambda: now_local(settings.LOCAL_TIMEZONE))
        self._loaders: dict[str, ProgressiveLoader] = {}
        self._consumer_task: asyncio.Task[None] | None = None
        self._closed = False

    @classmethod
    def create(
        cls,
        settings: DeliverySettings | None = None,
        *,
        sources: Iterable[CollectionSource] | None = None,
        client: RemoteDataClient | None = None,
        durable_cache: DurableCache | None = None,
        metrics: InMemoryDeliveryMetricsCollector | None = None,
        clock: Callable[[], datetime] | None = None,
        **gate_kwargs: Any,
    ) -> DeliveryRuntime:
        settings = settings or DeliverySettings()
        configure_otel(settings.SERVICE_NAME)
        metrics = metrics or InMemoryDeliveryMetricsCollector()
        gate = ScheduleGate.create(GateConfig.from_settings(settings), metrics=metrics, **gate_kwargs)
        if sources is None:
            client = client or RemoteDataClient.from_settings(settings)
            sources = [venue_collection_source(client)]
        runtime = cls(
            settings=settings,
            gate=gate,
            fanout=InvalidationFanout(metrics=metrics),
            durable_cache=durable_cache if durable_cache is not None else _build_durable_cache(settings),
            sources={source.kind: source for source in sources},
            metrics=metrics,
            clock=clock,
        )
        logger.info("delivery_runtime_created", extra={"collections": ",".join(sorted(runtime._sources))})
        return runtime

    @property
    def closed(self) -> bool:
        return self._closed

    def now(self) -> datetime:
        return self._clock()

    def register_source(self, source: CollectionSource) -> None:
        if source.kind in self._loaders:
            raise ValueError(f"collection already mounted: {source.kind}")
        self._sources[source.kind] = source

    def use_collection(self, kind: str) -> CollectionHandle:
        if self._closed:
            raise RuntimeError("delivery runtime is shut down")
        loader = self._loaders.get(kind)
        if loader is None:
            source = self._sources.get(kind)
            if source is None:
                raise KeyError(f"unknown collection: {kind}")
            loader = ProgressiveLoader(
                source,
                self.gate,
                self.fanout,
                self.durable_cache,
                metrics=self.metrics,
            )
            self._loaders[kind] = loader
        loader.mount()
        return CollectionHandle(loader)

    def release_collection(self, kind: str) -> None:
        loader = self._loaders.pop(kind, None)
        if loader is not None:
            loader.unmount()

    def publish(self, notification: ChangeNotification) -> InvalidationEvent:
        return self.fanout.publish(notification)

    def optimistic_store(self, initial: Mapping[str, Any] | None = None) -> OptimisticStore[Any]:
        return OptimisticStore(self.gate, initial)

    def apply_filters(
        self,
        kind: str,
        active_filter_ids: Iterable[str],
        now: datetime | None = None,
        memberships: Sequence[ListMembership] = (),
        breweries: Mapping[str, Brewery] | None = None,
    ) -> Sequence[Venue]:
        loader = self._loader(kind)
        context = loader.filter_context(now or self.now(), memberships, breweries)
        return self._filter_engine.apply(loader.view().data, active_filter_ids, context)

    def is_entity_open(self, kind: str, entity: Venue, now: datetime | None = None) -> bool:
        return is_entity_open(entity, self._loader(kind).filter_context(now or self.now()))

    def is_kitchen_open(self, kind: str, entity: Venue, now: datetime | None = None) -> bool:
        return is_entity_kitchen_open(entity, self._loader(kind).filter_context(now or self.now()))

    def is_happy_hour(self, kind: str, entity: Venue, now: datetime | None = None) -> bool:
        return is_entity_in_happy_hour(entity, self._loader(kind).filter_context(now or self.now()))

    def has_daily_special(self, kind: str, entity: Venue, now: datetime | None = None) -> bool:
        return has_entity_daily_special(entity, self._loader(kind).filter_context(now or self.now()))

    def has_event_today(self, kind: str, entity: Venue, now: datetime | None = None) -> bool:
        return has_entity_event_today(entity, self._loader(kind).filter_context(now or self.now()))

    def start_change_consumer(self) -> asyncio.Task[None] | None:
        settings = self.settings
        if not settings.KAFKA_BOOTSTRAP_SERVERS or self._consumer_task is not None:
            return self._consumer_task
        consumer = ChangeNotificationConsumer(
            self.fanout,
            EventConsumerConfig.from_settings(settings),
            build_dedup_store(settings.REDIS_URL),
        )
        self._consumer_task = asyncio.get_running_loop().create_task(
            consumer.run(
                settings.KAFKA_BOOTSTRAP_SERVERS,
                settings.CHANGE_TOPIC,
                settings.CHANGE_CONSUMER_GROUP,
                settings.CHANGE_DLQ_TOPIC,
            )
        )
        logger.info("change_consumer_started", extra={"topic": settings.CHANGE_TOPIC})
        return self._consumer_task

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            await asyncio.gather(self._consumer_task, return_exceptions=True)
            self._consumer_task = None
        loaders = list(self._loaders.values())
        for loader in loaders:
            loader.unmount()
        await self.gate.shutdown()
        for loader in loaders:
            await loader.settle()
        self._loaders.clear()
        logger.info("delivery_runtime_shutdown", extra={"leaked_subscriptions": self.fanout.active_count()})
        self.fanout.close()

    def _loader(self, kind: str) -> ProgressiveLoader:
        loader = self._loaders.get(kind)
        if loader is None:
            raise KeyError(f"collection not mounted: {kind}")
        return loader


@contextmanager
def use_runtime(runtime: DeliveryRuntime) -> Iterator[DeliveryRuntime]:
    token = _current_runtime.set(runtime)
    try:
        yield runtime
    finally:
        _current_runtime.reset(token)


def get_runtime() -> DeliveryRuntime:
    runtime = _current_runtime.get()
    if runtime is None:
        raise RuntimeError("no delivery runtime in context; wrap the caller in use_runtime()")
    return runtime


def _build_durable_cache(settings: DeliverySettings) -> DurableCache:
    if settings.DURABLE_CACHE_PATH:
        return FileDurableCache(settings.DURABLE_CACHE_PATH, ttl_seconds=settings.DURABLE_CACHE_TTL_SECONDS)
    return InMemoryDurableCache(ttl_seconds=settings.DURABLE_CACHE_TTL_SECONDS)
