"""Scheduled, progressive and invalidation-aware delivery of venue collections."""

from data_delivery.cache import FileDurableCache, InMemoryDurableCache, PhaseCache
from data_delivery.gate import BACKGROUND, CRITICAL, HIGH, LOW, NORMAL, GateConfig, GateStats, ScheduleGate
from data_delivery.invalidation import InvalidationEvent, InvalidationFanout, SubscriptionScope
from data_delivery.loader import CollectionSource, CollectionView, ProgressiveLoader
from data_delivery.optimistic import Committed, Optimistic, OptimisticStore
from data_delivery.remote import RemoteDataClient
from data_delivery.runtime import CollectionHandle, DeliveryRuntime, get_runtime, use_runtime
from data_delivery.sources import venue_collection_source

__all__ = [
    "BACKGROUND",
    "CRITICAL",
    "CollectionHandle",
    "CollectionSource",
    "CollectionView",
    "Committed",
    "DeliveryRuntime",
    "FileDurableCache",
    "GateConfig",
    "GateStats",
    "HIGH",
    "InMemoryDurableCache",
    "InvalidationEvent",
    "InvalidationFanout",
    "LOW",
    "NORMAL",
    "Optimistic",
    "OptimisticStore",
    "PhaseCache",
    "ProgressiveLoader",
    "RemoteDataClient",
    "ScheduleGate",
    "SubscriptionScope",
    "get_runtime",
    "use_runtime",
    "venue_collection_source",
]
