from __future__ import annotations

from typing import Optional, Protocol, Set


class KeyValueStore(Protocol):
    """Primitive command set every ephemeral-state service is written against.

    Implementations raise ``KVSError`` (or ``KVSUnavailable``) on failure and
    never return partial results. TTLs are whole seconds; sorted-set scores
    are epoch milliseconds.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool: ...

    async def setex(self, key: str, ttl: int, value: str) -> bool: ...

    async def delete(self, *keys: str) -> int: ...

    async def exists(self, key: str) -> bool: ...

    async def incr(self, key: str) -> int: ...

    async def expire(self, key: str, ttl: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def keys(self, pattern: str) -> list[str]: ...

    async def getdel(self, key: str) -> Optional[str]: ...

    async def sadd(self, key: str, *members: str) -> int: ...

    async def srem(self, key: str, *members: str) -> int: ...

    async def smembers(self, key: str) -> Set[str]: ...

    async def zadd(self, key: str, mapping: dict[str, float], *, gt: bool = False) -> int: ...

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int: ...

    async def zcard(self, key: str) -> int: ...

    async def ping(self) -> bool: ...

    async def close(self) -> None: ...


__all__ = ["KeyValueStore"]
