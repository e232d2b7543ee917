from __future__ import annotations

from typing import Optional

from promptvault.service.degrade import Clock, KVSBackedService
from promptvault.storage.kvs import KeyValueStore

ACTIVE_USERS_KEY = "active_users"


class PresenceTracker(KVSBackedService):
    """Counts principals seen within a trailing window.

    A single sorted set holds ``user -> last seen (epoch ms)``. Every touch
    also prunes entries older than the window, so no sweeper is needed;
    ``prune`` exists for callers that want an explicit cleanup pass.
    """

    def __init__(
        self,
        kvs: KeyValueStore,
        *,
        window_seconds: int = 15 * 60,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(kvs, clock=clock)
        self.window_seconds = window_seconds
        self.window_ms = window_seconds * 1000

    async def _prune(self, now_ms: int) -> int:
        return await self.kvs.zremrangebyscore(
            ACTIVE_USERS_KEY, float("-inf"), now_ms - self.window_ms - 1
        )

    async def touch(self, user_id: str) -> None:
        async def _touch() -> None:
            now_ms = self._now_ms()
            # GT keeps scores non-decreasing under racing writers
            await self.kvs.zadd(ACTIVE_USERS_KEY, {user_id: now_ms}, gt=True)
            await self._prune(now_ms)

        await self._guard("presence_touch_failed", _touch, None)

    async def active_count(self) -> int:
        async def _count() -> int:
            await self._prune(self._now_ms())
            return await self.kvs.zcard(ACTIVE_USERS_KEY)

        return await self._guard("presence_count_failed", _count, 0)

    async def prune(self) -> int:
        removed = await self._guard(
            "presence_prune_failed", lambda: self._prune(self._now_ms()), 0
        )
        if removed:
            self.logger.info("presence_pruned", removed=removed)
        return removed


__all__ = ["PresenceTracker", "ACTIVE_USERS_KEY"]
