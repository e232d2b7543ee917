from __future__ import annotations

from typing import Optional

from promptvault.service.degrade import Clock, KVSBackedService
from promptvault.storage.kvs import KeyValueStore


def login_attempts_key(identifier: str) -> str:
    return f"login_attempts:{identifier}"


class LoginAttemptTracker(KVSBackedService):
    """Failed-login counters per account identifier, reset on success."""

    def __init__(
        self,
        kvs: KeyValueStore,
        *,
        window_seconds: int = 15 * 60,
        max_attempts: int = 5,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(kvs, clock=clock)
        self.window_seconds = window_seconds
        self.max_attempts = max_attempts

    async def record_failure(self, identifier: str) -> int:
        async def _record() -> int:
            key = login_attempts_key(identifier)
            attempts = await self.kvs.incr(key)
            await self.kvs.expire(key, self.window_seconds)
            return attempts

        attempts = await self._guard("login_attempt_record_failed", _record, 0)
        if attempts >= self.max_attempts:
            self.logger.warning("login_lockout_reached", attempts=attempts)
        return attempts

    async def clear(self, identifier: str) -> None:
        await self._guard(
            "login_attempt_clear_failed",
            lambda: self.kvs.delete(login_attempts_key(identifier)),
            0,
        )

    async def attempts(self, identifier: str) -> int:
        async def _attempts() -> int:
            raw = await self.kvs.get(login_attempts_key(identifier))
            try:
                return int(raw) if raw is not None else 0
            except ValueError:
                return 0

        return await self._guard("login_attempt_read_failed", _attempts, 0)

    async def is_locked(self, identifier: str) -> bool:
        if self.max_attempts <= 0:
            return False
        return await self.attempts(identifier) >= self.max_attempts


__all__ = ["LoginAttemptTracker", "login_attempts_key"]
