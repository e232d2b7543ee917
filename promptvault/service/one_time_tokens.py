from __future__ import annotations

import secrets
from enum import Enum
from typing import Dict, Optional

from promptvault.service.degrade import Clock, KVSBackedService
from promptvault.storage.kvs import KeyValueStore


class TokenPurpose(str, Enum):
    PASSWORD_RESET = "password_reset"
    EMAIL_VERIFICATION = "email_verify"

    def key(self, token: str) -> str:
        return f"{self.value}:{token}"


DEFAULT_TTLS: Dict[TokenPurpose, int] = {
    TokenPurpose.PASSWORD_RESET: 60 * 60,
    TokenPurpose.EMAIL_VERIFICATION: 24 * 60 * 60,
}


def generate_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


class OneTimeTokenStore(KVSBackedService):
    """Single-use ``token -> subject`` mappings for reset and verification flows.

    Consumption is an atomic GETDEL, so two racing requests can never both
    redeem the same token.
    """

    def __init__(
        self,
        kvs: KeyValueStore,
        *,
        ttls: Optional[Dict[TokenPurpose, int]] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(kvs, clock=clock)
        self.ttls = {**DEFAULT_TTLS, **(ttls or {})}

    async def issue(
        self,
        purpose: TokenPurpose,
        subject: str,
        token: str,
        ttl: Optional[int] = None,
    ) -> Optional[str]:
        """Store ``token`` for ``subject``; returns None if the write failed."""
        ttl = ttl or self.ttls[purpose]
        stored = await self._guard(
            "one_time_token_issue_failed",
            lambda: self.kvs.setex(purpose.key(token), ttl, subject),
            False,
            purpose=purpose.value,
        )
        if not stored:
            return None
        self.logger.info("one_time_token_issued", purpose=purpose.value, ttl=ttl)
        return token

    async def consume(self, purpose: TokenPurpose, token: str) -> Optional[str]:
        """Redeem ``token``; ``None`` means invalid, expired or already used."""
        if not token:
            return None
        subject = await self._guard(
            "one_time_token_consume_failed",
            lambda: self.kvs.getdel(purpose.key(token)),
            None,
            purpose=purpose.value,
        )
        if subject is not None:
            self.logger.info("one_time_token_consumed", purpose=purpose.value)
        return subject


__all__ = ["OneTimeTokenStore", "TokenPurpose", "generate_token", "DEFAULT_TTLS"]
