from __future__ import annotations

import asyncio
import contextlib
from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from promptvault.api.error_handling import register_exception_handlers
from promptvault.api.middleware import RateLimitMiddleware, ResponseCacheMiddleware
from promptvault.api.routes import router
from promptvault.config import Settings
from promptvault.logging import get_logger, set_correlation_id
from promptvault.service.presence import PresenceTracker

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


_prune_task: asyncio.Task | None = None


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup and shutdown events."""
    global _prune_task
    from promptvault.service.runtime import get_runtime

    runtime = get_runtime()
    healthy = await runtime.cache.health_check()
    logger.info("startup_kvs_status", kvs_healthy=healthy)
    _prune_task = asyncio.create_task(
        _run_presence_prune(
            runtime.presence, runtime.settings.presence_prune_interval_seconds
        )
    )

    yield

    try:
        if _prune_task:
            _prune_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await _prune_task
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="PromptVault API", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev hosts; no wildcard while credentials are allowed
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


# Starlette wraps in reverse order: the rate limiter runs before the cache
app.add_middleware(ResponseCacheMiddleware)
app.add_middleware(RateLimitMiddleware)


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    if request.url.path.startswith("/api/"):
        # Shared caching happens server side only
        response.headers.setdefault("Cache-Control", "no-store, private")
    response.headers.setdefault("API-Version", __version__)
    return response


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "session_id",
        "X-Request-ID",
    ],
    expose_headers=[
        "X-Request-ID",
        "X-Cache",
        "X-RateLimit-Limit",
        "X-RateLimit-Remaining",
        "X-RateLimit-Reset",
        "Retry-After",
    ],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every log line of a request with its correlation id.

    The id comes from the client's ``X-Request-ID`` header when present,
    otherwise a fresh UUID, and is echoed back on the response.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


async def _run_presence_prune(presence: PresenceTracker, interval_seconds: int) -> None:
    """Background loop trimming idle users from the presence set."""

    interval = max(interval_seconds, 30)
    try:
        while True:
            await asyncio.sleep(interval)
            await presence.prune()
    except asyncio.CancelledError:
        logger.info("presence_prune_task_cancelled")


def create_app() -> FastAPI:
    return app
