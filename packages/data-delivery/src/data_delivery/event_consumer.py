from __future__ import annotations

import asyncio
import json
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

from devkit.config import DeliverySettings

from data_delivery.core.exceptions import DataShapeError
from data_delivery.core.models import ChangeNotification
from data_delivery.invalidation import InvalidationEvent, InvalidationFanout

logger = logging.getLogger(__name__)

PublishDlq = Callable[[bytes, str], Awaitable[None]]


class ProcessedEventStore(ABC):
    @abstractmethod
    async def mark_once(self, event_id: str, ttl_seconds: int) -> bool:
        """Record ``event_id``; ``False`` when it was already seen within its TTL."""
        raise NotImplementedError


class RedisLikeDedupClient(Protocol):
    async def set(self, key: str, value: str, ex: int, nx: bool) -> bool | None: ...


class InMemoryProcessedEventStore(ProcessedEventStore):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at: dict[str, float] = {}

    async def mark_once(self, event_id: str, ttl_seconds: int) -> bool:
        now = self._clock()
        if self._expires_at.get(event_id, 0.0) > now:
            return False
        self._expires_at = {key: expiry for key, expiry in self._expires_at.items() if expiry > now}
        self._expires_at[event_id] = now + ttl_seconds
        return True


class RedisProcessedEventStore(ProcessedEventStore):
    def __init__(self, client: RedisLikeDedupClient, prefix: str = "venue_change_dedup") -> None:
        self._client = client
        self._prefix = prefix

    async def mark_once(self, event_id: str, ttl_seconds: int) -> bool:
        created = await self._client.set(f"{self._prefix}:{event_id}", "1", ex=ttl_seconds, nx=True)
        return bool(created)


def build_dedup_store(redis_url: str | None) -> ProcessedEventStore:
    if not redis_url:
        return InMemoryProcessedEventStore()
    try:
        import redis.asyncio as redis

        client = redis.from_url(redis_url, encoding="utf-8", decode_responses=True)
    except Exception as exc:
        logger.warning("dedup_store_fallback_in_memory", extra={"error": repr(exc)})
        return InMemoryProcessedEventStore()
    return RedisProcessedEventStore(client)


@dataclass(frozen=True)
class EventConsumerConfig:
    max_retries: int = 3
    base_delay_seconds: float = 0.1
    dedup_ttl_seconds: int = 3600

    @classmethod
    def from_settings(cls, settings: DeliverySettings) -> EventConsumerConfig:
        return cls(dedup_ttl_seconds=settings.EVENT_DEDUP_TTL_SECONDS)


def notification_from_envelope(message: Mapping[str, Any]) -> ChangeNotification:
    """Build a notification from a ``{event_type, trace_id, occurred_at, payload}`` envelope."""
    event_kind = message.get("event_type") or message.get("event_kind")
    if not isinstance(event_kind, str) or not event_kind:
        raise DataShapeError("change notification without event_type")
    payload = message.get("payload")
    if not isinstance(payload, dict):
        payload = {}
    event_id = message.get("trace_id") or message.get("event_id")
    return ChangeNotification(
        event_kind=event_kind,
        entity_id=_entity_id(message, payload),
        payload=payload,
        event_id=str(event_id) if event_id else None,
        committed_at=_occurred_at(message.get("occurred_at")),
    )


class ChangeNotificationConsumer:
    def __init__(
        self,
        fanout: InvalidationFanout,
        config: EventConsumerConfig,
        dedup_store: ProcessedEventStore,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._fanout = fanout
        self._config = config
        self._dedup_store = dedup_store
        self._sleep = sleep_fn

    async def handle_message(self, message: Mapping[str, Any]) -> InvalidationEvent | None:
        notification = notification_from_envelope(message)
        if notification.event_id:
            allowed = await self._dedup_store.mark_once(notification.event_id, self._config.dedup_ttl_seconds)
            if not allowed:
                logger.debug("change_notification_duplicate", extra={"event_id": notification.event_id})
                return None
        return self._fanout.publish(notification)

    async def consume(self, stream: AsyncIterable[bytes], publish_dlq: PublishDlq) -> int:
        handled = 0
        async for value in stream:
            if await self._process_with_retry(value, publish_dlq):
                handled += 1
        return handled

    async def run(
        self,
        bootstrap_servers: str,
        topic: str,
        group_id: str,
        dlq_topic: str,
    ) -> None:
        """Consume ``topic`` until cancelled, dead-lettering failures to ``dlq_topic``."""
        aiokafka = _require_aiokafka()
        consumer = aiokafka.AIOKafkaConsumer(
            topic,
            bootstrap_servers=bootstrap_servers,
            group_id=group_id,
            enable_auto_commit=True,
            auto_offset_reset="latest",
        )
        producer = aiokafka.AIOKafkaProducer(bootstrap_servers=bootstrap_servers)
        await consumer.start()
        try:
            await producer.start()
            try:
                handled = await self.consume(
                    _message_values(consumer, topic),
                    publish_dlq=_dead_letter_to(producer, topic, dlq_topic),
                )
            finally:
                await producer.stop()
        finally:
            await consumer.stop()
        logger.info("change_consumer_stopped", extra={"topic": topic, "handled": handled})

    async def _process_with_retry(self, value: bytes, publish_dlq: PublishDlq) -> bool:
        attempt = 0
        while True:
            try:
                await self.handle_message(self._decode_message(value))
                return True
            except DataShapeError as exc:
                logger.warning("change_notification_malformed", extra={"error": str(exc)})
                await publish_dlq(value, str(exc))
                return False
            except Exception as exc:
                attempt += 1
                if attempt >= self._config.max_retries:
                    logger.error("change_notification_dead_lettered", extra={"error": repr(exc), "attempts": attempt})
                    await publish_dlq(value, str(exc))
                    return False
                await self._sleep(self._config.base_delay_seconds * (2 ** (attempt - 1)))

    def _decode_message(self, value: bytes) -> dict[str, Any]:
        try:
            decoded = json.loads(value.decode("utf-8"))
        except (UnicodeDecodeError, ValueError) as exc:
            raise DataShapeError(f"undecodable change notification: {exc}") from exc
        if not isinstance(decoded, dict):
            raise DataShapeError("change notification is not a JSON object")
        return decoded


def _entity_id(message: Mapping[str, Any], payload: Mapping[str, Any]) -> str | None:
    explicit = message.get("entity_id") or payload.get("entity_id")
    if explicit:
        return str(explicit)
    for section in ("new", "old"):
        values = payload.get(section)
        if not isinstance(values, Mapping):
            continue
        for key in ("venue_id", "id"):
            if values.get(key):
                return str(values[key])
    return None


def _occurred_at(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError as exc:
        raise DataShapeError(f"invalid occurred_at: {value!r}") from exc


def _require_aiokafka() -> Any:
    try:
        import aiokafka
    except ImportError as exc:
        raise RuntimeError("consuming venue change notifications needs aiokafka; install the 'kafka' extra") from exc
    return aiokafka


async def _message_values(consumer: AsyncIterable[Any], topic: str) -> AsyncIterator[bytes]:
    async for message in consumer:
        if message.value is None:
            logger.debug("change_notification_tombstone_skipped", extra={"topic": topic, "offset": message.offset})
            continue
        yield message.value


def _dead_letter_to(producer: Any, source_topic: str, dlq_topic: str) -> PublishDlq:
    async def publish(value: bytes, error: str) -> None:
        record = {
            "source_topic": source_topic,
            "error": error,
            "raw_value": value.decode("utf-8", errors="replace"),
        }
        await producer.send_and_wait(dlq_topic, json.dumps(record).encode("utf-8"))

    return publish
