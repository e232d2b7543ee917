from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from promptvault.service.degrade import Clock, KVSBackedService
from promptvault.storage.kvs import KeyValueStore

ActivityCallback = Callable[[str], Awaitable[None]]

DEFAULT_SESSION_TTL = 24 * 60 * 60
DEFAULT_REMEMBER_ME_TTL = 30 * 24 * 60 * 60


def session_key(session_id: str) -> str:
    return f"session:{session_id}"


def user_sessions_key(user_id: str) -> str:
    return f"user_sessions:{user_id}"


class SessionRecord(BaseModel):
    """Display attributes and client metadata for one login."""

    model_config = ConfigDict(extra="ignore")

    user_id: str
    username: str
    email: str
    role: str = "user"
    last_activity: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    # Populated on read; never written to the KVS
    session_id: Optional[str] = Field(default=None, exclude=True)


class SessionStore(KVSBackedService):
    """Server-side sessions with sliding expiry and a per-user index.

    Every successful ``get`` rewrites the record with a fresh TTL, so a
    session lives as long as it keeps being used. The index set
    ``user_sessions:<user>`` may briefly hold ids whose session already
    expired; readers drop those lazily.
    """

    def __init__(
        self,
        kvs: KeyValueStore,
        *,
        session_ttl: int = DEFAULT_SESSION_TTL,
        remember_me_ttl: int = DEFAULT_REMEMBER_ME_TTL,
        on_activity: Optional[ActivityCallback] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(kvs, clock=clock)
        self.session_ttl = session_ttl
        self.remember_me_ttl = remember_me_ttl
        self._on_activity = on_activity

    def _duration(self, remember_me: bool) -> int:
        return self.remember_me_ttl if remember_me else self.session_ttl

    def _timestamp(self) -> datetime:
        return datetime.fromtimestamp(self._now(), tz=timezone.utc)

    async def _activity(self, user_id: str) -> None:
        if self._on_activity is not None:
            await self._on_activity(user_id)

    async def _extend_index(self, user_id: str, ttl: int) -> None:
        index_key = user_sessions_key(user_id)
        # Never shorten: a remember-me session may share the index
        if await self.kvs.ttl(index_key) < ttl:
            await self.kvs.expire(index_key, ttl)

    async def _write(self, session_id: str, record: SessionRecord) -> None:
        await self.kvs.setex(
            session_key(session_id),
            self._duration(record.remember_me),
            record.model_dump_json(),
        )

    async def _load(self, session_id: str) -> Optional[SessionRecord]:
        raw = await self.kvs.get(session_key(session_id))
        if raw is None:
            return None
        try:
            record = SessionRecord.model_validate_json(raw)
        except ValidationError:
            self.logger.warning("session_record_malformed", session_id=session_id)
            await self.kvs.delete(session_key(session_id))
            return None
        record.session_id = session_id
        return record

    async def create(
        self, session_id: str, record: SessionRecord, remember: bool = False
    ) -> None:
        record = record.model_copy(
            update={"remember_me": remember, "last_activity": self._timestamp()}
        )

        async def _create() -> bool:
            await self._write(session_id, record)
            await self.kvs.sadd(user_sessions_key(record.user_id), session_id)
            await self._extend_index(record.user_id, self._duration(remember))
            return True

        created = await self._guard(
            "session_create_failed", _create, False, user_id=record.user_id
        )
        if created:
            self.logger.info(
                "session_created", user_id=record.user_id, remember_me=remember
            )
        await self._activity(record.user_id)

    async def get(self, session_id: str) -> Optional[SessionRecord]:
        """Return the session and slide its expiry, or ``None`` if absent."""

        async def _get() -> Optional[SessionRecord]:
            record = await self._load(session_id)
            if record is None:
                return None
            record.last_activity = self._timestamp()
            await self._write(session_id, record)
            await self._extend_index(record.user_id, self._duration(record.remember_me))
            return record

        record = await self._guard("session_get_failed", _get, None)
        if record is not None:
            await self._activity(record.user_id)
        return record

    async def update(
        self, session_id: str, partial: Dict[str, Any]
    ) -> Optional[SessionRecord]:
        async def _update() -> Optional[SessionRecord]:
            record = await self._load(session_id)
            if record is None:
                return None
            # The owner is fixed; the user_sessions index is keyed by it
            if partial.get("user_id", record.user_id) != record.user_id:
                self.logger.warning(
                    "session_update_rejected",
                    fields=sorted(partial.keys()),
                    reason="owner_change",
                )
                return None
            merged = {**record.model_dump(), **partial}
            try:
                updated = SessionRecord.model_validate(merged)
            except ValidationError:
                self.logger.warning(
                    "session_update_rejected", fields=sorted(partial.keys())
                )
                return None
            updated.session_id = session_id
            await self._write(session_id, updated)
            return updated

        return await self._guard("session_update_failed", _update, None)

    async def delete(self, session_id: str) -> None:
        async def _delete() -> None:
            record = await self._load(session_id)
            if record is not None:
                await self.kvs.srem(user_sessions_key(record.user_id), session_id)
            await self.kvs.delete(session_key(session_id))

        await self._guard("session_delete_failed", _delete, None)

    async def delete_all_for_subject(self, user_id: str) -> int:
        """Log a user out everywhere; returns how many session keys were removed."""

        async def _delete_all() -> int:
            index_key = user_sessions_key(user_id)
            session_ids = await self.kvs.smembers(index_key)
            deleted = 0
            if session_ids:
                deleted = await self.kvs.delete(
                    *(session_key(sid) for sid in session_ids)
                )
            await self.kvs.delete(index_key)
            return deleted

        deleted = await self._guard(
            "session_delete_all_failed", _delete_all, 0, user_id=user_id
        )
        self.logger.info("sessions_revoked", user_id=user_id, deleted=deleted)
        return deleted

    async def list_for_subject(self, user_id: str) -> List[SessionRecord]:
        async def _list() -> List[SessionRecord]:
            index_key = user_sessions_key(user_id)
            records: List[SessionRecord] = []
            stale: List[str] = []
            for session_id in sorted(await self.kvs.smembers(index_key)):
                record = await self._load(session_id)
                if record is None:
                    stale.append(session_id)
                else:
                    records.append(record)
            if stale:
                await self.kvs.srem(index_key, *stale)
            return records

        return await self._guard(
            "session_list_failed", _list, [], user_id=user_id
        )


__all__ = [
    "SessionRecord",
    "SessionStore",
    "session_key",
    "user_sessions_key",
]
