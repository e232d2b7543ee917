from __future__ import annotations

import fnmatch
import math
import threading
import time
from typing import Any, Callable, Dict, Optional, Set, Tuple

from promptvault.storage.errors import KVSError

_STRING = "string"
_SET = "set"
_ZSET = "zset"


class MemoryKVS:
    """In-process key-value store with lazy TTL expiry.

    Mirrors the Redis semantics the services rely on: integer-string
    counters, sets, sorted sets with GT upserts and atomic GETDEL. Time comes
    from ``clock`` (epoch seconds) so tests can move it forward explicitly.
    """

    def __init__(self, clock: Optional[Callable[[], float]] = None) -> None:
        self._clock = clock or time.time
        # key -> (type, value, expires_at or None)
        self._data: Dict[str, Tuple[str, Any, Optional[float]]] = {}
        # RLock so helpers can nest inside public operations
        self._lock = threading.RLock()

    def _now(self) -> float:
        return float(self._clock())

    def _live(self, key: str) -> Optional[Tuple[str, Any, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        expires_at = entry[2]
        if expires_at is not None and expires_at <= self._now():
            del self._data[key]
            return None
        return entry

    def _typed(self, key: str, kind: str) -> Optional[Any]:
        entry = self._live(key)
        if entry is None:
            return None
        if entry[0] != kind:
            raise KVSError(
                "WRONGTYPE Operation against a key holding the wrong kind of value",
                operation=kind,
            )
        return entry[1]

    def _expiry(self, key: str) -> Optional[float]:
        entry = self._data.get(key)
        return entry[2] if entry else None

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._typed(key, _STRING)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> bool:
        if ex is not None and ex <= 0:
            raise KVSError("invalid expire time in 'set' command", operation="set")
        with self._lock:
            expires_at = self._now() + ex if ex is not None else None
            self._data[key] = (_STRING, str(value), expires_at)
            return True

    async def setex(self, key: str, ttl: int, value: str) -> bool:
        return await self.set(key, value, ex=ttl)

    async def delete(self, *keys: str) -> int:
        removed = 0
        with self._lock:
            for key in keys:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
        return removed

    async def exists(self, key: str) -> bool:
        with self._lock:
            return self._live(key) is not None

    async def incr(self, key: str) -> int:
        with self._lock:
            current = self._typed(key, _STRING)
            try:
                value = int(current) + 1 if current is not None else 1
            except ValueError as exc:
                raise KVSError(
                    "value is not an integer or out of range", operation="incr"
                ) from exc
            self._data[key] = (_STRING, str(value), self._expiry(key))
            return value

    async def expire(self, key: str, ttl: int) -> bool:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return False
            if ttl <= 0:
                del self._data[key]
                return True
            self._data[key] = (entry[0], entry[1], self._now() + ttl)
            return True

    async def ttl(self, key: str) -> int:
        with self._lock:
            entry = self._live(key)
            if entry is None:
                return -2
            if entry[2] is None:
                return -1
            return max(0, math.ceil(entry[2] - self._now()))

    async def keys(self, pattern: str) -> list[str]:
        with self._lock:
            return [
                key
                for key in list(self._data.keys())
                if self._live(key) is not None and fnmatch.fnmatchcase(key, pattern)
            ]

    async def getdel(self, key: str) -> Optional[str]:
        with self._lock:
            value = self._typed(key, _STRING)
            if value is not None:
                del self._data[key]
            return value

    async def sadd(self, key: str, *members: str) -> int:
        with self._lock:
            current: Set[str] = self._typed(key, _SET) or set()
            added = len(set(members) - current)
            current = current | set(members)
            self._data[key] = (_SET, current, self._expiry(key) if self._live(key) else None)
            return added

    async def srem(self, key: str, *members: str) -> int:
        with self._lock:
            current: Optional[Set[str]] = self._typed(key, _SET)
            if not current:
                return 0
            removed = len(current & set(members))
            remaining = current - set(members)
            if remaining:
                self._data[key] = (_SET, remaining, self._expiry(key))
            else:
                del self._data[key]
            return removed

    async def smembers(self, key: str) -> Set[str]:
        with self._lock:
            return set(self._typed(key, _SET) or set())

    async def zadd(self, key: str, mapping: dict[str, float], *, gt: bool = False) -> int:
        with self._lock:
            current: Dict[str, float] = dict(self._typed(key, _ZSET) or {})
            expiry = self._expiry(key) if self._live(key) else None
            added = 0
            for member, score in mapping.items():
                score = float(score)
                if member not in current:
                    added += 1
                    current[member] = score
                elif not gt or score > current[member]:
                    current[member] = score
            self._data[key] = (_ZSET, current, expiry)
            return added

    async def zremrangebyscore(self, key: str, min_score: float, max_score: float) -> int:
        with self._lock:
            current: Optional[Dict[str, float]] = self._typed(key, _ZSET)
            if not current:
                return 0
            low, high = float(min_score), float(max_score)
            kept = {m: s for m, s in current.items() if not (low <= s <= high)}
            removed = len(current) - len(kept)
            if kept:
                self._data[key] = (_ZSET, kept, self._expiry(key))
            else:
                del self._data[key]
            return removed

    async def zcard(self, key: str) -> int:
        with self._lock:
            return len(self._typed(key, _ZSET) or {})

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        return None

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


__all__ = ["MemoryKVS"]
