from __future__ import annotations

from typing import Protocol

from ridepass.storage.models import Purpose


class CounterStore(Protocol):
    async def increment(self, key: str, ttl_seconds: int) -> int: ...

    async def delete(self, key: str) -> int: ...


def rate_key(identifier: str, purpose: Purpose) -> str:
    return f"rl:otp:{Purpose(purpose).value}:{identifier}"


class RateLimiter:
    """Fixed-window request counter per (identifier, purpose).

    The limiter only counts; callers compare the returned value with their
    own threshold so limits can differ per purpose.
    """

    def __init__(self, cache: CounterStore, *, window_seconds: int = 3600) -> None:
        self.cache = cache
        self.window_seconds = window_seconds

    async def check_and_increment(self, identifier: str, purpose: Purpose) -> int:
        # Expiry is attached atomically when the counter is created
        return await self.cache.increment(
            rate_key(identifier, purpose), self.window_seconds
        )

    async def reset(self, identifier: str, purpose: Purpose) -> None:
        await self.cache.delete(rate_key(identifier, purpose))
