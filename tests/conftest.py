import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might initialize runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
# Empty URL selects the in-process cache (allowed because TEST_MODE is on)
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("JWT_ACCESS_SECRET", "test-access-secret-for-testing-only")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-for-testing-only")
os.environ.setdefault("LOG_JSON", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from ridepass.service.runtime import reset_runtime_for_tests  # noqa: E402
from ridepass.storage.memory import MemoryCache  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


class FakeClock:
    """Manually advanced clock for TTL and expiry checks."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class YieldingCache(MemoryCache):
    """MemoryCache that returns to the event loop before every operation.

    Lets gathered coroutines interleave between cache round trips the way
    they do against a networked Redis.
    """

    async def get(self, key):
        await asyncio.sleep(0)
        return await super().get(key)

    async def set(self, key, value, ttl_seconds):
        await asyncio.sleep(0)
        await super().set(key, value, ttl_seconds)

    async def delete(self, key):
        await asyncio.sleep(0)
        return await super().delete(key)

    async def increment(self, key, ttl_seconds):
        await asyncio.sleep(0)
        return await super().increment(key, ttl_seconds)

    async def compare_and_delete(self, key, expected):
        await asyncio.sleep(0)
        return await super().compare_and_delete(key, expected)

    async def claim_refresh_once(self, jti, ttl_seconds):
        await asyncio.sleep(0)
        return await super().claim_refresh_once(jti, ttl_seconds)


@pytest.fixture
def yielding_cache(clock):
    return YieldingCache(clock=clock)


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
