from __future__ import annotations

import asyncio
import threading
from typing import Optional, Set

from promptvault.config import Settings, get_settings, reset_settings_cache
from promptvault.logging import get_logger
from promptvault.service.auth import AuthService
from promptvault.service.cache import CacheDurations, CacheService
from promptvault.service.degrade import Clock
from promptvault.service.login_attempts import LoginAttemptTracker
from promptvault.service.one_time_tokens import OneTimeTokenStore, TokenPurpose
from promptvault.service.presence import PresenceTracker
from promptvault.service.rate_limit import RateLimiter, build_policies
from promptvault.service.revocation import TokenRevocationList
from promptvault.service.sessions import SessionStore
from promptvault.storage.errors import KVSError
from promptvault.storage.kvs import KeyValueStore
from promptvault.storage.memory import MemoryStore
from promptvault.storage.memory_kvs import MemoryKVS
from promptvault.storage.redis_kvs import RedisKVS, mask_url_password

logger = get_logger(__name__)


class Runtime:
    """Holds the shared KVS client and singleton service instances for the app."""

    def __init__(
        self,
        *,
        settings: Optional[Settings] = None,
        kvs: Optional[KeyValueStore] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            memory_kvs=self.settings.memory_kvs,
            test_mode=self.settings.test_mode,
        )
        self.kvs: KeyValueStore = kvs or self._build_kvs(clock)
        self.store = MemoryStore()

        settings = self.settings
        self.presence = PresenceTracker(
            self.kvs, window_seconds=settings.presence_window_seconds, clock=clock
        )
        self.sessions = SessionStore(
            self.kvs,
            session_ttl=settings.session_ttl_seconds,
            remember_me_ttl=settings.remember_me_ttl_seconds,
            on_activity=self.presence.touch,
            clock=clock,
        )
        self.revocations = TokenRevocationList(self.kvs, clock=clock)
        self.one_time_tokens = OneTimeTokenStore(
            self.kvs,
            ttls={
                TokenPurpose.PASSWORD_RESET: settings.password_reset_ttl_seconds,
                TokenPurpose.EMAIL_VERIFICATION: settings.email_verification_ttl_seconds,
            },
            clock=clock,
        )
        self.rate_limiter = RateLimiter(self.kvs, clock=clock)
        self.rate_limit_policies = build_policies(settings)
        self.cache = CacheService(
            self.kvs,
            durations=CacheDurations.from_settings(settings),
            scan_invalidation=settings.cache_scan_invalidation,
            clock=clock,
        )
        self.login_attempts = LoginAttemptTracker(
            self.kvs,
            window_seconds=settings.login_attempt_window_seconds,
            max_attempts=settings.login_max_attempts,
            clock=clock,
        )
        self.auth = AuthService(
            self.store,
            settings,
            sessions=self.sessions,
            revocations=self.revocations,
            one_time_tokens=self.one_time_tokens,
            login_attempts=self.login_attempts,
            clock=clock,
        )
        logger.info("runtime_init_completed", kvs_type=type(self.kvs).__name__)

    def _build_kvs(self, clock: Optional[Clock]) -> KeyValueStore:
        if self.settings.memory_kvs:
            return MemoryKVS(clock=clock)
        kvs = RedisKVS(
            self.settings.redis_url,
            socket_timeout=self.settings.kvs_socket_timeout,
            operation_timeout=self.settings.kvs_operation_timeout,
        )
        try:
            kvs.verify_connection()
        except KVSError as exc:
            # Keep serving; redis-py reconnects once the server is back
            logger.warning(
                "kvs_unreachable_degraded",
                redis_url=mask_url_password(self.settings.redis_url),
                error=str(exc),
                message=(
                    "Starting without a reachable KVS; rate limiting, caching and "
                    "sessions are disabled until it recovers."
                ),
            )
        return kvs

    async def close(self) -> None:
        await self.kvs.close()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Double-checked locking: the fast path skips the lock once the runtime
    exists.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


# Close tasks scheduled from inside a running loop; held until they finish
_pending_closes: Set[asyncio.Task] = set()


def _on_close_done(task: asyncio.Task) -> None:
    _pending_closes.discard(task)
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.warning("runtime_close_failed", error=str(exc))


def _close_quietly(previous: Runtime) -> Optional[asyncio.Task]:
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        try:
            asyncio.run(previous.close())
        except Exception as exc:
            logger.warning("runtime_close_failed", error=str(exc))
        return None
    task = loop.create_task(previous.close())
    _pending_closes.add(task)
    task.add_done_callback(_on_close_done)
    return task


def reset_runtime_for_tests(
    *, kvs: Optional[KeyValueStore] = None, clock: Optional[Clock] = None
) -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs.

    Uses the same lock as ``get_runtime``. ``kvs`` and ``clock`` let tests
    inject an outage or a controllable time source.
    """
    global runtime

    with _runtime_lock:
        if runtime is not None:
            _close_quietly(runtime)
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings=settings, kvs=kvs, clock=clock)
        return runtime


__all__ = ["Runtime", "get_runtime", "reset_runtime_for_tests"]
