"""Tests for the fixed-window code request limiter."""

from ridepass.service.rate_limit import RateLimiter, rate_key
from ridepass.storage.memory import MemoryCache
from ridepass.storage.models import Purpose

PHONE = "+251911223344"


def test_rate_key_format():
    assert rate_key(PHONE, Purpose.LOGIN) == f"rl:otp:login:{PHONE}"
    assert rate_key(PHONE, "reset") == f"rl:otp:reset:{PHONE}"


async def test_counts_per_identifier_and_purpose(clock):
    cache = MemoryCache(clock=clock)
    limiter = RateLimiter(cache, window_seconds=3600)

    assert [await limiter.check_and_increment(PHONE, Purpose.LOGIN) for _ in range(3)] == [1, 2, 3]
    # Independent counters per purpose and per identifier
    assert await limiter.check_and_increment(PHONE, Purpose.REGISTRATION) == 1
    assert await limiter.check_and_increment("+251922334455", Purpose.LOGIN) == 1


async def test_window_is_set_on_first_increment_only(clock):
    cache = MemoryCache(clock=clock)
    limiter = RateLimiter(cache, window_seconds=3600)

    await limiter.check_and_increment(PHONE, Purpose.LOGIN)
    clock.advance(3000)
    await limiter.check_and_increment(PHONE, Purpose.LOGIN)
    # Second increment did not extend the window
    assert cache.ttl(rate_key(PHONE, Purpose.LOGIN)) == 600

    clock.advance(601)
    assert await limiter.check_and_increment(PHONE, Purpose.LOGIN) == 1


async def test_reset_clears_counter(clock):
    cache = MemoryCache(clock=clock)
    limiter = RateLimiter(cache)

    for _ in range(4):
        await limiter.check_and_increment(PHONE, Purpose.LOGIN)
    await limiter.reset(PHONE, Purpose.LOGIN)
    assert await limiter.check_and_increment(PHONE, Purpose.LOGIN) == 1
