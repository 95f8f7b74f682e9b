from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from ridepass.config import Settings, get_settings, reset_settings_cache
from ridepass.logging import get_logger
from ridepass.service.delivery import EmailService
from ridepass.service.otc import OTCEngine
from ridepass.service.passwords import Argon2PasswordHasher
from ridepass.service.rate_limit import RateLimiter
from ridepass.service.tokens import SessionIssuer
from ridepass.service.verification import VerificationOrchestrator
from ridepass.storage.memory import MemoryCache, MemoryStore
from ridepass.storage.postgres import PostgresStore
from ridepass.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Replace the password component of a URL with ``***`` for logging."""
    if not url:
        return url
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***url_parse_error***"
    if not parsed.password:
        return url
    netloc = parsed.hostname or ""
    if parsed.port:
        netloc = f"{netloc}:{parsed.port}"
    netloc = f"{parsed.username or ''}:***@{netloc}"
    return urlunparse(
        (parsed.scheme, netloc, parsed.path, parsed.params, parsed.query, parsed.fragment)
    )


class Runtime:
    """Builds the store, cache and services once and hands them to the app."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        try:
            self.store: Union[MemoryStore, PostgresStore] = (
                MemoryStore()
                if self.settings.use_memory_store
                else PostgresStore(
                    self.settings.database_url,
                    min_size=self.settings.db_pool_min_size,
                    max_size=self.settings.db_pool_max_size,
                    timeout=self.settings.db_connect_timeout,
                )
            )
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type="memory" if self.settings.use_memory_store else "postgres",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, MemoryCache] = self._build_cache()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
        )
        self.hasher = Argon2PasswordHasher()
        self.limiter = RateLimiter(
            self.cache, window_seconds=self.settings.otp_rate_window_seconds
        )
        self.issuer = SessionIssuer(self.settings, cache=self.cache)
        self.otc = OTCEngine(
            self.cache,
            settings=self.settings,
            delivery=self.email,
            store=self.store,
            limiter=self.limiter,
        )
        self.verification = VerificationOrchestrator(
            store=self.store,
            otc=self.otc,
            limiter=self.limiter,
            issuer=self.issuer,
            hasher=self.hasher,
            settings=self.settings,
        )

        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            email_configured=self.email.is_configured,
        )

    def _build_cache(self) -> Union[RedisCache, MemoryCache]:
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(
                    self.settings.redis_url,
                    socket_timeout=self.settings.redis_socket_timeout,
                )
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc

        if not self.settings.test_mode and not self.settings.allow_cache_fallback_dev:
            raise RuntimeError(
                "Redis is required for one-time codes and rate limits; start Redis or "
                "set TEST_MODE=true/ALLOW_CACHE_FALLBACK_DEV=true for a local fallback."
            ) from redis_error

        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            mode="TEST_MODE" if self.settings.test_mode else "ALLOW_CACHE_FALLBACK_DEV",
        )
        return MemoryCache()

    async def close(self) -> None:
        await self.cache.close()
        self.store.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(runtime.cache.close())
            except RuntimeError:
                asyncio.run(runtime.cache.close())

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
