from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Optional, Set
from urllib.parse import urlparse, urlunparse

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError, ResponseError
from redis.exceptions import TimeoutError as RedisTimeoutError

from promptvault.logging import get_logger
from promptvault.storage.errors import KVSError, KVSUnavailable

logger = get_logger(__name__)

# Atomic get-and-delete for servers older than 6.2
_GETDEL_SCRIPT = """
local value = redis.call('GET', KEYS[1])
if value then
    redis.call('DEL', KEYS[1])
end
return value
"""


def mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a connection URL for logging.

    Example: redis://:hunter2@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "<unparseable url>"


class RedisKVS:
    """Redis-backed key-value store used by every ephemeral-state service.

    Each command is bounded twice: by the socket timeouts configured on the
    connection pool and by ``asyncio.wait_for`` around the awaited call, so a
    stalled server costs a request at most ``operation_timeout`` seconds.
    Redis failures surface as ``KVSUnavailable`` (connection or timeout) or
    ``KVSError`` (the server rejected the command).
    """

    def __init__(
        self,
        redis_url: str,
        *,
        socket_timeout: float = 2.0,
        operation_timeout: float = 0.5,
        client: Any = None,
    ):
        self.redis_url = redis_url
        self.operation_timeout = operation_timeout
        self.client = client or aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._socket_timeout = socket_timeout

    def verify_connection(self) -> None:
        """Ping with a short-lived synchronous client.

        A sync client avoids binding the async pool to a temporary event loop
        during startup checks.
        """
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_timeout,
        )
        try:
            sync_client.ping()
        except (RedisError, OSError) as exc:
            raise KVSUnavailable(str(exc) or "ping failed", operation="ping") from exc
        finally:
            sync_client.close()

    async def _call(self, operation: str, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.operation_timeout)
        except (
            asyncio.TimeoutError,
            RedisTimeoutError,
            RedisConnectionError,
            OSError,
        ) as exc:
            raise KVSUnavailable(
                str(exc) or f"{operation} timed out", operation=operation
            ) from exc
        except RedisError as exc:
            raise KVSError(str(exc), operation=operation) from exc

    async def get(self, key: str) -> Optional[str]:
        return await self._call("get", self.client.get(key))

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        return bool(await self._call("set", self.client.set(key, value, ex=ex)))

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        return bool(await self._call("setex", self.client.setex(key, ttl, value)))

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return int(await self._call("delete", self.client.delete(*keys)))

    async def exists(self, key: str) -> bool:
        return bool(await self._call("exists", self.client.exists(key)))

    async def incr(self, key: str) -> int:
        return int(await self._call("incr", self.client.incr(key)))

    async def expire(self, key: str, ttl: int) -> bool:
        return bool(await self._call("expire", self.client.expire(key, ttl)))

    async def ttl(self, key: str) -> int:
        return int(await self._call("ttl", self.client.ttl(key)))

    async def keys(self, pattern: str) -> list[str]:
        """Collect matching keys with SCAN so the server is never blocked by KEYS."""

        async def _scan() -> list[str]:
            found: list[str] = []
            async for key in self.client.scan_iter(match=pattern, count=500):
                found.append(key)
            return found

        return await self._call("scan", _scan())

    async def getdel(self, key: str) -> Optional[str]:
        try:
            return await self._call("getdel", self.client.getdel(key))
        except AttributeError:
            # redis-py without GETDEL support
            return await self._call("eval", self.client.eval(_GETDEL_SCRIPT, 1, key))
        except KVSError as exc:
            cause = exc.__cause__
            if isinstance(cause, ResponseError) and "unknown command" in str(cause).lower():
                return await self._call(
                    "eval", self.client.eval(_GETDEL_SCRIPT, 1, key)
                )
            raise

    async def sadd(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("sadd", self.client.sadd(key, *members)))

    async def srem(self, key: str, *members: str) -> int:
        if not members:
            return 0
        return int(await self._call("srem", self.client.srem(key, *members)))

    async def smembers(self, key: str) -> Set[str]:
        return set(await self._call("smembers", self.client.smembers(key)))

    async def zadd(self, key: str, mapping: dict[str, float], *, gt: bool = False) -> int:
        return int(await self._call("zadd", self.client.zadd(key, mapping, gt=gt)))

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        return int(
            await self._call(
                "zremrangebyscore",
                self.client.zremrangebyscore(key, min_score, max_score),
            )
        )

    async def zcard(self, key: str) -> int:
        return int(await self._call("zcard", self.client.zcard(key)))

    async def ping(self) -> bool:
        return bool(await self._call("ping", self.client.ping()))

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        try:
            await self.client.close()
            await self.client.connection_pool.disconnect()
        except (RedisError, OSError) as exc:
            logger.warning(
                "kvs_close_failed",
                redis_url=mask_url_password(self.redis_url),
                error=str(exc),
            )


__all__ = ["RedisKVS", "mask_url_password"]
