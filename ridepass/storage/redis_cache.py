from __future__ import annotations

import functools
from typing import Any, Awaitable, Callable, Optional, TypeVar

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import RedisError

from ridepass.logging import get_logger
from ridepass.storage.errors import StoreUnavailable

logger = get_logger(__name__)

T = TypeVar("T")


def _unavailable_on_redis_error(
    func: Callable[..., Awaitable[T]]
) -> Callable[..., Awaitable[T]]:
    """Surface connectivity failures as StoreUnavailable, never as a miss."""

    @functools.wraps(func)
    async def wrapper(self: "RedisCache", *args: Any, **kwargs: Any) -> T:
        try:
            return await func(self, *args, **kwargs)
        except RedisError as exc:
            logger.error("redis_operation_failed", op=func.__name__, error=str(exc))
            raise StoreUnavailable(
                "volatile store unavailable", detail={"op": func.__name__}
            ) from exc

    return wrapper


class RedisCache:
    """Thin Redis wrapper for one-time codes, counters and token denylists."""

    # INCR and set the window expiry in one step so a counter never lives forever
    _INCREMENT_SCRIPT = """
local value = redis.call('INCR', KEYS[1])
if value == 1 then
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[1]))
end
return value
"""

    # Delete only if the stored value is still the one the caller read
    _COMPARE_AND_DELETE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
  return redis.call('DEL', KEYS[1])
end
return 0
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._increment = self.client.register_script(self._INCREMENT_SCRIPT)
        self._compare_and_delete = self.client.register_script(
            self._COMPARE_AND_DELETE_SCRIPT
        )

    def verify_connection(self) -> None:
        """Assert Redis connectivity before serving requests."""
        # Short-lived sync client so the async one is not bound to a temporary loop
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    @_unavailable_on_redis_error
    async def ping(self) -> bool:
        return bool(await self.client.ping())

    @_unavailable_on_redis_error
    async def set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    @_unavailable_on_redis_error
    async def get(self, key: str) -> Optional[str]:
        return await self.client.get(key)

    @_unavailable_on_redis_error
    async def delete(self, key: str) -> int:
        return int(await self.client.delete(key))

    @_unavailable_on_redis_error
    async def increment(self, key: str, ttl_seconds: int) -> int:
        """Increment a counter, starting its expiry window on first use."""
        value = await self._increment(keys=[key], args=[max(1, int(ttl_seconds))])
        return int(value)

    @_unavailable_on_redis_error
    async def expire(self, key: str, ttl_seconds: int) -> bool:
        return bool(await self.client.expire(key, max(1, int(ttl_seconds))))

    @_unavailable_on_redis_error
    async def compare_and_delete(self, key: str, expected: str) -> bool:
        """Atomically delete ``key`` if it still holds ``expected``.

        Returns True for exactly one of any number of concurrent callers.
        """
        deleted = await self._compare_and_delete(keys=[key], args=[expected])
        return bool(int(deleted))

    @_unavailable_on_redis_error
    async def mark_refresh_revoked(self, jti: str, ttl_seconds: int) -> None:
        if ttl_seconds > 0:
            await self.client.set(f"auth:refresh:revoked:{jti}", "1", ex=ttl_seconds)

    @_unavailable_on_redis_error
    async def claim_refresh_once(self, jti: str, ttl_seconds: int) -> bool:
        """Mark ``jti`` used. False when it was already used or revoked."""
        claimed = await self.client.set(
            f"auth:refresh:revoked:{jti}", "1", ex=max(1, int(ttl_seconds)), nx=True
        )
        return bool(claimed)

    async def close(self) -> None:
        """Close Redis connection pool. Call when shutting down or resetting runtime."""
        await self.client.close()
        await self.client.connection_pool.disconnect()
