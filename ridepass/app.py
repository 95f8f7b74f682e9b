from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from ridepass.api.error_handling import register_exception_handlers
from ridepass.api.routes import router
from ridepass.api.schemas import Envelope
from ridepass.config import get_settings
from ridepass.logging import get_logger, set_correlation_id
from ridepass.service.runtime import get_runtime

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release pools on shutdown."""
    get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        await get_runtime().close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="RidePass Auth", version=__version__, lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Propagate ``X-Request-ID`` (or a fresh UUID) into logs and the response."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    if request.url.path.startswith("/v1/"):
        # Tokens and codes must never sit in shared caches
        response.headers.setdefault("Cache-Control", "no-store")
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz", response_model=Envelope, tags=["ops"])
async def healthz():
    """Report reachability of the durable store and the code cache."""
    runtime = get_runtime()
    checks = {}
    try:
        runtime.store.ping()
        checks["store"] = "ok"
    except Exception as exc:
        logger.warning("health_store_failed", error=str(exc))
        checks["store"] = "unavailable"
    try:
        await runtime.cache.ping()
        checks["cache"] = "ok"
    except Exception as exc:
        logger.warning("health_cache_failed", error=str(exc))
        checks["cache"] = "unavailable"
    healthy = all(value == "ok" for value in checks.values())
    return Envelope(
        status="ok",
        data={"healthy": healthy, "checks": checks, "version": __version__},
    )
