import asyncio

import pytest

from data_delivery.core.exceptions import GateClosedError, PermanentError, TransientError
from data_delivery.core.metrics import InMemoryDeliveryMetricsCollector
from data_delivery.core.retry import RetryPolicy
from data_delivery.gate import HIGH, LOW, NORMAL, GateConfig, ScheduleGate


def _recorder(order: list[str], name: str):
    async def run() -> str:
        order.append(name)
        return name

    return run


@pytest.mark.asyncio
async def test_gate_never_exceeds_max_in_flight() -> None:
    metrics = InMemoryDeliveryMetricsCollector()
    gate = ScheduleGate(GateConfig(max_in_flight=2), metrics=metrics)
    running = 0
    peak = 0

    async def task() -> str:
        nonlocal running, peak
        running += 1
        peak = max(peak, running)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        running -= 1
        return "ok"

    results = await asyncio.gather(*(gate.submit(task) for _ in range(7)))

    assert results == ["ok"] * 7
    assert peak == 2
    assert gate.stats().peak_in_flight == 2
    assert gate.in_flight == 0
    assert metrics.gate_succeeded == 7


@pytest.mark.asyncio
async def test_gate_orders_queue_by_priority_then_submission() -> None:
    gate = ScheduleGate(GateConfig(max_in_flight=1))
    release = asyncio.Event()
    order: list[str] = []

    async def blocker() -> str:
        await release.wait()
        order.append("blocker")
        return "blocker"

    first = asyncio.create_task(gate.submit(blocker, HIGH))
    await asyncio.sleep(0)
    queued = [
        asyncio.create_task(gate.submit(_recorder(order, "low"), LOW)),
        asyncio.create_task(gate.submit(_recorder(order, "normal-a"), NORMAL)),
        asyncio.create_task(gate.submit(_recorder(order, "high"), HIGH)),
        asyncio.create_task(gate.submit(_recorder(order, "normal-b"), NORMAL)),
    ]
    await asyncio.sleep(0)
    assert gate.stats().queued == 4

    release.set()
    await asyncio.gather(first, *queued)

    assert order == ["blocker", "high", "normal-a", "normal-b", "low"]


@pytest.mark.asyncio
async def test_gate_retries_transient_failure_with_backoff() -> None:
    delays: list[float] = []
    attempts = 0

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    async def flaky() -> str:
        nonlocal attempts
        attempts += 1
        if attempts < 3:
            raise TimeoutError("slow upstream")
        return "done"

    gate = ScheduleGate(GateConfig(retry=RetryPolicy(max_retries=3, base_delay_seconds=1.0)), sleep_fn=fake_sleep)
    result = await gate.submit(flaky)

    assert result == "done"
    assert attempts == 3
    assert delays == [1.0, 2.0]
    assert gate.stats().retried == 2


@pytest.mark.asyncio
async def test_gate_surfaces_last_error_after_retry_ceiling() -> None:
    delays: list[float] = []
    attempts = 0

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    async def always_down() -> None:
        nonlocal attempts
        attempts += 1
        raise TransientError(f"attempt {attempts}")

    policy = RetryPolicy(max_retries=3, base_delay_seconds=1.0, max_delay_seconds=2.5)
    gate = ScheduleGate(GateConfig(retry=policy), sleep_fn=fake_sleep)

    with pytest.raises(TransientError, match="attempt 4"):
        await gate.submit(always_down)

    assert attempts == 4
    assert delays == [1.0, 2.0, 2.5]
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))
    stats = gate.stats()
    assert stats.failed == 1
    assert stats.success_rate == 0.0


@pytest.mark.asyncio
async def test_gate_does_not_retry_permanent_failure() -> None:
    delays: list[float] = []
    attempts = 0

    async def fake_sleep(delay: float) -> None:
        delays.append(delay)

    async def rejected() -> None:
        nonlocal attempts
        attempts += 1
        raise PermanentError("forbidden")

    gate = ScheduleGate(sleep_fn=fake_sleep)

    with pytest.raises(PermanentError):
        await gate.submit(rejected)

    assert attempts == 1
    assert delays == []


@pytest.mark.asyncio
async def test_gate_retry_keeps_original_queue_position() -> None:
    order: list[str] = []
    resume_retry = asyncio.Event()
    release = asyncio.Event()
    failed_once = False

    async def controlled_sleep(_: float) -> None:
        await resume_retry.wait()

    async def flaky() -> str:
        nonlocal failed_once
        order.append("flaky")
        if not failed_once:
            failed_once = True
            raise ConnectionResetError("reset")
        return "flaky"

    async def blocker() -> str:
        await release.wait()
        return "blocker"

    gate = ScheduleGate(GateConfig(max_in_flight=1), sleep_fn=controlled_sleep)
    first = asyncio.create_task(gate.submit(flaky, NORMAL))
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert gate.stats().backing_off == 1

    holder = asyncio.create_task(gate.submit(blocker, NORMAL))
    later = asyncio.create_task(gate.submit(_recorder(order, "later"), NORMAL))
    await asyncio.sleep(0)
    resume_retry.set()
    await asyncio.sleep(0)
    release.set()
    await asyncio.gather(first, holder, later)

    assert order == ["flaky", "flaky", "later"]


@pytest.mark.asyncio
async def test_gate_shutdown_rejects_queued_tasks() -> None:
    gate = ScheduleGate.create(GateConfig(max_in_flight=1))
    release = asyncio.Event()
    ran: list[str] = []

    async def blocker() -> str:
        await release.wait()
        return "finished"

    running = asyncio.create_task(gate.submit(blocker))
    queued = asyncio.create_task(gate.submit(_recorder(ran, "queued")))
    await asyncio.sleep(0)

    closing = asyncio.create_task(gate.shutdown())
    await asyncio.sleep(0)
    release.set()
    await closing

    assert await running == "finished"
    with pytest.raises(GateClosedError):
        await queued
    assert ran == []
    assert gate.closed
    with pytest.raises(GateClosedError):
        await gate.submit(_recorder(ran, "late"))


@pytest.mark.asyncio
async def test_gate_skips_queued_task_whose_caller_went_away() -> None:
    gate = ScheduleGate(GateConfig(max_in_flight=1))
    release = asyncio.Event()
    ran: list[str] = []

    async def blocker() -> None:
        await release.wait()

    running = asyncio.create_task(gate.submit(blocker))
    abandoned = asyncio.create_task(gate.submit(_recorder(ran, "abandoned")))
    await asyncio.sleep(0)
    abandoned.cancel()
    await asyncio.gather(abandoned, return_exceptions=True)

    release.set()
    await running
    await gate.submit(_recorder(ran, "next"))

    assert ran == ["next"]


def test_gate_config_rejects_zero_concurrency() -> None:
    with pytest.raises(ValueError):
        GateConfig(max_in_flight=0)
