"""Priority-ordered, concurrency-bounded execution of remote calls.

``ScheduleGate`` decides *when* and *how many at once* submitted thunks run.
Queued work is ordered by ``(priority desc, submission order asc)``; a thunk
that fails transiently sleeps out its backoff without holding a slot and then
re-enters the queue at its original priority and submission position.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar
from uuid import uuid4

from devkit.config import DeliverySettings
from devkit.observability import get_tracer

from data_delivery.core.exceptions import GateClosedError
from data_delivery.core.metrics import InMemoryDeliveryMetricsCollector
from data_delivery.core.retry import RetryPolicy

T = TypeVar("T")
logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

CRITICAL = 10
HIGH = 7
NORMAL = 5
LOW = 3
BACKGROUND = 1


@dataclass(frozen=True)
class GateConfig:
    max_in_flight: int = 8
    retry: RetryPolicy = field(default_factory=RetryPolicy)

    def __post_init__(self) -> None:
        if self.max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")

    @classmethod
    def from_settings(cls, settings: DeliverySettings) -> GateConfig:
        return cls(
            max_in_flight=settings.GATE_MAX_IN_FLIGHT,
            retry=RetryPolicy(
                max_retries=settings.GATE_MAX_RETRIES,
                base_delay_seconds=settings.GATE_BASE_DELAY_SECONDS,
                max_delay_seconds=settings.GATE_MAX_DELAY_SECONDS,
            ),
        )


@dataclass(frozen=True)
class GateStats:
    in_flight: int
    queued: int
    backing_off: int
    peak_in_flight: int
    submitted: int
    succeeded: int
    failed: int
    retried: int
    success_rate: float


@dataclass
class QueuedTask:
    task_id: str
    thunk: Callable[[], Awaitable[Any]]
    priority: int
    sequence: int
    enqueued_at: float
    future: asyncio.Future[Any]
    retries: int = 0


class ScheduleGate:
    def __init__(
        self,
        config: GateConfig | None = None,
        *,
        sleep_fn: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
        metrics: InMemoryDeliveryMetricsCollector | None = None,
    ) -> None:
        self._config = config or GateConfig()
        self._sleep = sleep_fn
        self._clock = clock
        self._metrics = metrics
        self._queue: list[tuple[int, int, QueuedTask]] = []
        self._sequence = itertools.count()
        self._in_flight = 0
        self._peak_in_flight = 0
        self._closed = False
        self._running: set[asyncio.Task[None]] = set()
        self._backing_off: dict[str, tuple[QueuedTask, asyncio.Task[None]]] = {}
        self._submitted = 0
        self._succeeded = 0
        self._failed = 0
        self._retried = 0

    @classmethod
    def create(cls, config: GateConfig | None = None, **kwargs: Any) -> ScheduleGate:
        gate = cls(config, **kwargs)
        logger.info(
            "gate_created",
            extra={
                "max_in_flight": gate._config.max_in_flight,
                "max_retries": gate._config.retry.max_retries,
            },
        )
        return gate

    @property
    def config(self) -> GateConfig:
        return self._config

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def closed(self) -> bool:
        return self._closed

    async def submit(self, task: Callable[[], Awaitable[T]], priority: int = NORMAL) -> T:
        if self._closed:
            raise GateClosedError("schedule gate is shut down")
        item = QueuedTask(
            task_id=str(uuid4()),
            thunk=task,
            priority=priority,
            sequence=next(self._sequence),
            enqueued_at=self._clock(),
            future=asyncio.get_running_loop().create_future(),
        )
        self._submitted += 1
        if self._metrics:
            self._metrics.increment_submitted()
        self._push(item)
        self._dispatch()
        return await item.future

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        queued = [item for _, _, item in self._queue]
        self._queue.clear()
        backing_off = list(self._backing_off.values())
        for _, waiter in backing_off:
            waiter.cancel()
        for item in queued + [item for item, _ in backing_off]:
            self._reject(item)
        pending = list(self._running) + [waiter for _, waiter in backing_off]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        logger.info(
            "gate_shutdown",
            extra={"rejected_count": len(queued) + len(backing_off), "succeeded": self._succeeded},
        )

    def stats(self) -> GateStats:
        settled = self._succeeded + self._failed
        return GateStats(
            in_flight=self._in_flight,
            queued=sum(1 for _, _, item in self._queue if not item.future.done()),
            backing_off=len(self._backing_off),
            peak_in_flight=self._peak_in_flight,
            submitted=self._submitted,
            succeeded=self._succeeded,
            failed=self._failed,
            retried=self._retried,
            success_rate=(self._succeeded / settled) * 100 if settled else 0.0,
        )

    def _push(self, item: QueuedTask) -> None:
        heapq.heappush(self._queue, (-item.priority, item.sequence, item))

    def _dispatch(self) -> None:
        while self._queue and self._in_flight < self._config.max_in_flight:
            _, _, item = heapq.heappop(self._queue)
            if item.future.done():
                # submitter went away while the task was queued
                continue
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
            if self._metrics:
                self._metrics.observe_in_flight(self._in_flight)
            runner = asyncio.get_running_loop().create_task(self._run(item))
            self._running.add(runner)
            runner.add_done_callback(self._running.discard)

    async def _run(self, item: QueuedTask) -> None:
        try:
            with tracer.start_as_current_span(
                "schedule_gate.dispatch",
                attributes={"gate.priority": item.priority, "gate.retries": item.retries},
            ):
                result = await item.thunk()
        except asyncio.CancelledError:
            self._in_flight -= 1
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as exc:
            self._in_flight -= 1
            self._on_failure(item, exc)
        else:
            self._in_flight -= 1
            self._succeeded += 1
            if self._metrics:
                self._metrics.increment_succeeded()
            if not item.future.done():
                item.future.set_result(result)
        finally:
            if not self._closed:
                self._dispatch()

    def _on_failure(self, item: QueuedTask, exc: Exception) -> None:
        retry = self._config.retry
        if not self._closed and not item.future.done() and retry.should_retry(exc, item.retries):
            delay = retry.delay_for(item.retries)
            item.retries += 1
            self._retried += 1
            if self._metrics:
                self._metrics.increment_retried()
            logger.warning(
                "gate_task_retry",
                extra={
                    "task_id": item.task_id,
                    "attempt": item.retries,
                    "delay_seconds": delay,
                    "error": repr(exc),
                },
            )
            waiter = asyncio.get_running_loop().create_task(self._requeue_after(item, delay))
            self._backing_off[item.task_id] = (item, waiter)
            return

        self._failed += 1
        if self._metrics:
            self._metrics.increment_failed()
        logger.warning(
            "gate_task_failed",
            extra={"task_id": item.task_id, "attempts": item.retries + 1, "error": repr(exc)},
        )
        if not item.future.done():
            item.future.set_exception(exc)

    async def _requeue_after(self, item: QueuedTask, delay: float) -> None:
        try:
            await self._sleep(delay)
        finally:
            self._backing_off.pop(item.task_id, None)
        if self._closed:
            self._reject(item)
            return
        self._push(item)
        self._dispatch()

    def _reject(self, item: QueuedTask) -> None:
        if not item.future.done():
            item.future.set_exception(GateClosedError("schedule gate shut down before the task ran"))
