import asyncio

import pytest
from fakeredis import FakeServer
from fakeredis.aioredis import FakeRedis

from booking_service.breaker import CLOSED, HALF_OPEN, OPEN, CircuitBreaker, CircuitBreakerOpen
from booking_service.clock import FrozenClock


def _breaker():
    clock = FrozenClock()
    redis_client = FakeRedis(server=FakeServer(), decode_responses=True)
    return CircuitBreaker(redis_client, "mailer", clock, failure_threshold=2, reset_timeout_seconds=30), clock


def test_half_open_lets_one_caller_through():
    async def scenario():
        breaker, clock = _breaker()
        await breaker.record_failure()
        await breaker.record_failure()
        assert await breaker.state() == OPEN

        with pytest.raises(CircuitBreakerOpen):
            await breaker.allow_request()

        clock.advance(seconds=31)
        results = await asyncio.gather(
            *[breaker.allow_request() for _ in range(4)],
            return_exceptions=True,
        )
        assert sum(r is None for r in results) == 1
        assert sum(isinstance(r, CircuitBreakerOpen) for r in results) == 3
        assert await breaker.state() == HALF_OPEN

        await breaker.record_success()
        assert await breaker.state() == CLOSED
        await breaker.allow_request()
        await breaker.allow_request()

    asyncio.run(scenario())


def test_failed_trial_call_reopens_and_next_window_allows_another():
    async def scenario():
        breaker, clock = _breaker()
        await breaker.trip()

        clock.advance(seconds=31)
        await breaker.allow_request()
        await breaker.record_failure()
        assert await breaker.state() == OPEN
        with pytest.raises(CircuitBreakerOpen):
            await breaker.allow_request()

        clock.advance(seconds=31)
        await breaker.allow_request()

    asyncio.run(scenario())
