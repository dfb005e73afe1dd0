import pytest

from modelscope_cli.api.rate_limiter import AdaptiveRateLimiter
from modelscope_cli.utils.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerError,
    CircuitState,
)


async def fail(breaker: CircuitBreaker) -> None:
    with pytest.raises(RuntimeError):
        async with breaker:
            raise RuntimeError("boom")


async def test_circuit_opens_after_threshold():
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60)

    await fail(breaker)
    assert breaker.state is CircuitState.CLOSED
    await fail(breaker)
    assert breaker.state is CircuitState.OPEN

    with pytest.raises(CircuitBreakerError):
        async with breaker:
            pass


async def test_success_resets_failure_count():
    breaker = CircuitBreaker(failure_threshold=2)

    await fail(breaker)
    async with breaker:
        pass
    await fail(breaker)

    assert breaker.state is CircuitState.CLOSED


async def test_half_open_recovers_after_successes():
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0, success_threshold=2)
    await fail(breaker)
    assert breaker.state is CircuitState.OPEN

    async with breaker:
        pass
    assert breaker.state is CircuitState.HALF_OPEN
    async with breaker:
        pass
    assert breaker.state is CircuitState.CLOSED


async def test_half_open_failure_reopens():
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=0)
    await fail(breaker)
    await fail(breaker)
    assert breaker.state is CircuitState.OPEN


async def test_rate_limiter_backs_off_on_429():
    limiter = AdaptiveRateLimiter(initial_calls_per_second=8, min_calls_per_second=3)

    await limiter.on_429()
    assert limiter.rate == 4
    await limiter.on_429()
    assert limiter.rate == 3


async def test_rate_limiter_acquire_spaces_calls():
    limiter = AdaptiveRateLimiter(initial_calls_per_second=1000)
    for _ in range(3):
        await limiter.acquire()
    assert limiter.interval == pytest.approx(0.001)
