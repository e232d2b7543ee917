from __future__ import annotations

import math
from typing import Optional, Set

from pydantic import BaseModel

from promptvault.service.degrade import KVSBackedService


def revoked_token_key(jti: str) -> str:
    return f"blacklist:{jti}"


def user_revoked_key(user_id: str) -> str:
    return f"user_blacklist:{user_id}"


class RevokedToken(BaseModel):
    jti: str
    user_id: str
    exp: int
    reason: Optional[str] = None


class TokenRevocationList(KVSBackedService):
    """Denylist of token ids whose entries expire with the token itself."""

    async def revoke(
        self,
        jti: str,
        user_id: str,
        expiry_epoch: int,
        reason: Optional[str] = None,
    ) -> bool:
        """Deny ``jti`` until its natural expiry.

        Returns False when nothing was stored, either because the token has
        already expired or because the KVS rejected the write.
        """
        ttl = max(0, math.ceil(expiry_epoch - self._now()))
        if ttl <= 0:
            return False
        entry = RevokedToken(jti=jti, user_id=user_id, exp=int(expiry_epoch), reason=reason)

        async def _revoke() -> bool:
            await self.kvs.setex(revoked_token_key(jti), ttl, entry.model_dump_json())
            subject_key = user_revoked_key(user_id)
            await self.kvs.sadd(subject_key, jti)
            # The subject set lives as long as its longest-lived member
            if await self.kvs.ttl(subject_key) < ttl:
                await self.kvs.expire(subject_key, ttl)
            return True

        revoked = await self._guard(
            "token_revoke_failed", _revoke, False, user_id=user_id
        )
        if revoked:
            self.logger.info("token_revoked", user_id=user_id, ttl=ttl, reason=reason)
        return revoked

    async def is_revoked(self, jti: str) -> bool:
        return await self._guard(
            "token_revocation_check_failed",
            lambda: self.kvs.exists(revoked_token_key(jti)),
            False,
        )

    async def revoked_for_subject(self, user_id: str) -> Set[str]:
        """Token ids still denied for ``user_id``."""

        async def _members() -> Set[str]:
            jtis = await self.kvs.smembers(user_revoked_key(user_id))
            live = set()
            for jti in jtis:
                if await self.kvs.exists(revoked_token_key(jti)):
                    live.add(jti)
            return live

        return await self._guard(
            "token_revocation_list_failed", _members, set(), user_id=user_id
        )


__all__ = ["RevokedToken", "TokenRevocationList", "revoked_token_key", "user_revoked_key"]
