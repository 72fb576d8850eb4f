"""Fan-out of remote change notifications to cache staleness and subscribers.

The fan-out performs no I/O. Publishing a notification flags the routed phase
entries of every bound ``PhaseCache`` stale and then calls the matching
handlers synchronously, in subscription order. Handlers decide whether to
re-fetch; the flag transition is idempotent, so a duplicate or late
notification reports no newly stale phases.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import TracebackType
from typing import Any
from uuid import uuid4

from data_delivery.cache import PhaseCache
from data_delivery.core.metrics import InMemoryDeliveryMetricsCollector
from data_delivery.core.models import (
    BASIC,
    COMPLETE,
    DAILY_SPECIALS,
    EVENTS,
    HAPPY_HOURS,
    SCHEDULES,
    ChangeNotification,
    supplementary_phase,
)

logger = logging.getLogger(__name__)

ANY_EVENT = "*"
VENUE_UPDATED = "venue_updated"
VENUE_HOURS_UPDATED = "venue_hours_updated"
VENUE_HAPPY_HOURS_UPDATED = "venue_happy_hours_updated"
VENUE_DAILY_SPECIALS_UPDATED = "venue_daily_specials_updated"
VENUE_EVENTS_UPDATED = "venue_events_updated"

DEFAULT_ROUTES: dict[str, tuple[str, ...]] = {
    VENUE_UPDATED: (BASIC, COMPLETE),
    VENUE_HOURS_UPDATED: (supplementary_phase(SCHEDULES),),
    VENUE_HAPPY_HOURS_UPDATED: (supplementary_phase(HAPPY_HOURS),),
    VENUE_DAILY_SPECIALS_UPDATED: (supplementary_phase(DAILY_SPECIALS),),
    VENUE_EVENTS_UPDATED: (supplementary_phase(EVENTS),),
}


@dataclass(frozen=True)
class InvalidationEvent:
    notification: ChangeNotification
    stale: tuple[tuple[str, str], ...] = ()

    def stale_phases(self, kind: str) -> list[str]:
        return [phase for cache_kind, phase in self.stale if cache_kind == kind]


Handler = Callable[[InvalidationEvent], None]


@dataclass(frozen=True)
class _Subscription:
    id: str
    event_kind: str
    handler: Handler
    filter: Mapping[str, Any] = field(default_factory=dict)

    def matches(self, notification: ChangeNotification) -> bool:
        if self.event_kind not in (ANY_EVENT, notification.event_kind):
            return False
        for key, expected in self.filter.items():
            if key == "entity_id":
                if notification.entity_id != expected:
                    return False
            elif _payload_value(notification.payload, key) != expected:
                return False
        return True


class InvalidationFanout:
    def __init__(
        self,
        routes: Mapping[str, tuple[str, ...]] | None = None,
        metrics: InMemoryDeliveryMetricsCollector | None = None,
    ) -> None:
        self._routes = dict(DEFAULT_ROUTES if routes is None else routes)
        self._metrics = metrics
        self._caches: dict[str, PhaseCache] = {}
        self._subscriptions: dict[str, _Subscription] = {}

    def bind(self, cache: PhaseCache) -> None:
        self._caches[cache.kind] = cache

    def unbind(self, kind: str) -> None:
        self._caches.pop(kind, None)

    def subscribe(
        self,
        event_kind: str,
        handler: Handler,
        filter: Mapping[str, Any] | None = None,
    ) -> str:
        subscription_id = str(uuid4())
        self._subscriptions[subscription_id] = _Subscription(
            id=subscription_id,
            event_kind=event_kind,
            handler=handler,
            filter=dict(filter or {}),
        )
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        return self._subscriptions.pop(subscription_id, None) is not None

    def scope(self) -> SubscriptionScope:
        return SubscriptionScope(self)

    def active_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, notification: ChangeNotification) -> InvalidationEvent:
        stale: list[tuple[str, str]] = []
        for cache in list(self._caches.values()):
            for phase in self._routes.get(notification.event_kind, ()):
                if cache.mark_stale(phase, notification.committed_at, notification.entity_id):
                    stale.append((cache.kind, phase))
                    if self._metrics:
                        self._metrics.add_invalidation(phase)
        event = InvalidationEvent(notification=notification, stale=tuple(stale))
        logger.debug(
            "invalidation_published",
            extra={
                "event_kind": notification.event_kind,
                "entity_id": notification.entity_id,
                "stale_count": len(stale),
            },
        )
        for subscription in list(self._subscriptions.values()):
            if subscription.id not in self._subscriptions or not subscription.matches(notification):
                continue
            try:
                subscription.handler(event)
            except Exception:
                logger.exception(
                    "invalidation_handler_failed",
                    extra={"subscription_id": subscription.id, "event_kind": notification.event_kind},
                )
        return event

    def close(self) -> None:
        self._subscriptions.clear()
        self._caches.clear()


class SubscriptionScope:
    """Subscriptions owned by one consumer, released together on ``close``."""

    def __init__(self, fanout: InvalidationFanout) -> None:
        self._fanout = fanout
        self._ids: list[str] = []
        self._closed = False

    def subscribe(
        self,
        event_kind: str,
        handler: Handler,
        filter: Mapping[str, Any] | None = None,
    ) -> str:
        if self._closed:
            raise RuntimeError("subscription scope is closed")
        subscription_id = self._fanout.subscribe(event_kind, handler, filter)
        self._ids.append(subscription_id)
        return subscription_id

    @property
    def subscription_ids(self) -> tuple[str, ...]:
        return tuple(self._ids)

    def close(self) -> None:
        for subscription_id in self._ids:
            self._fanout.unsubscribe(subscription_id)
        self._ids.clear()
        self._closed = True

    def __enter__(self) -> SubscriptionScope:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.close()


def _payload_value(payload: Mapping[str, Any], key: str) -> Any:
    if key in payload:
        return payload[key]
    for section in ("new", "old"):
        values = payload.get(section)
        if isinstance(values, Mapping) and key in values:
            return values[key]
    return None
