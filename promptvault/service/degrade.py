from __future__ import annotations

import time
from typing import Awaitable, Callable, Optional, TypeVar

from promptvault.logging import get_logger
from promptvault.storage.errors import KVSError, KVSUnavailable
from promptvault.storage.kvs import KeyValueStore

T = TypeVar("T")

Clock = Callable[[], float]


class KVSBackedService:
    """Shared plumbing for services whose state lives only in the KVS.

    ``_guard`` runs one KVS interaction and, if the store fails, logs the
    named warning event and returns the caller's fallback instead. Nothing
    KVS-related ever propagates out of a public service method.
    """

    def __init__(self, kvs: KeyValueStore, *, clock: Optional[Clock] = None) -> None:
        self.kvs = kvs
        self._clock = clock or time.time
        self.logger = get_logger(type(self).__module__)

    def _now(self) -> float:
        return float(self._clock())

    def _now_ms(self) -> int:
        return int(self._now() * 1000)

    async def _guard(
        self,
        event: str,
        operation: Callable[[], Awaitable[T]],
        fallback: T,
        **fields,
    ) -> T:
        try:
            return await operation()
        except KVSError as exc:
            self.logger.warning(
                event,
                error=str(exc),
                kvs_operation=exc.operation,
                kvs_unavailable=isinstance(exc, KVSUnavailable),
                **fields,
            )
            return fallback

    async def health_check(self) -> bool:
        return await self._guard("kvs_health_check_failed", self.kvs.ping, False)


__all__ = ["KVSBackedService", "Clock"]
