import asyncio

import pytest

from deployment.circuit_breaker import CircuitBreaker, CircuitOpenError, CircuitState


class ManualClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


async def fail():
    raise ConnectionError("down")


async def ok():
    return "ok"


async def trip(breaker, times):
    for _ in range(times):
        with pytest.raises(ConnectionError):
            await breaker.call_async(fail)


@pytest.mark.asyncio
async def test_opens_after_threshold_and_fails_fast():
    breaker = CircuitBreaker(failure_threshold=2, clock=ManualClock())

    await trip(breaker, 2)

    assert breaker.state == CircuitState.OPEN
    with pytest.raises(CircuitOpenError):
        await breaker.call_async(ok)


@pytest.mark.asyncio
async def test_half_open_after_reset_timeout_then_closes():
    clock = ManualClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=30, half_open_max_calls=2, clock=clock)
    await trip(breaker, 1)

    clock.now += 30
    assert await breaker.call_async(ok) == "ok"
    assert breaker.state == CircuitState.HALF_OPEN
    assert await breaker.call_async(ok) == "ok"

    assert breaker.state == CircuitState.CLOSED
    assert breaker.get_stats()["failures"] == 0


@pytest.mark.asyncio
async def test_failure_while_half_open_reopens():
    clock = ManualClock()
    breaker = CircuitBreaker(failure_threshold=1, reset_timeout=10, clock=clock)
    await trip(breaker, 1)

    clock.now += 10
    await trip(breaker, 1)

    assert breaker.state == CircuitState.OPEN
    assert breaker.last_failure_time == clock.now


@pytest.mark.asyncio
async def test_success_resets_failure_count():
    breaker = CircuitBreaker(failure_threshold=3, clock=ManualClock())

    await trip(breaker, 2)
    await breaker.call_async(ok)
    await trip(breaker, 2)

    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_cancellation_is_not_a_failure():
    breaker = CircuitBreaker(failure_threshold=1, clock=ManualClock())

    async def slow():
        await asyncio.sleep(10)

    task = asyncio.ensure_future(breaker.call_async(slow))
    await asyncio.sleep(0)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert breaker.state == CircuitState.CLOSED
    assert breaker.failures == 0


@pytest.mark.asyncio
async def test_timeout_counts_as_failure():
    breaker = CircuitBreaker(failure_threshold=1, clock=ManualClock())

    async def slow():
        await asyncio.sleep(10)

    with pytest.raises(asyncio.TimeoutError):
        await breaker.call_async(asyncio.wait_for, slow(), 0.01)

    assert breaker.state == CircuitState.OPEN
