from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    email: str
    username: str
    role: str = "user"
    email_verified: bool = False
    bio: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class Prompt:
    id: str
    author_id: str
    title: str
    body: str
    tags: List[str] = field(default_factory=list)
    like_count: int = 0
    comment_count: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls, author_id: str, title: str, body: str, tags: Optional[List[str]] = None
    ) -> "Prompt":
        return cls(
            id=_new_id(),
            author_id=author_id,
            title=title,
            body=body,
            tags=list(tags or []),
        )


@dataclass
class Comment:
    id: str
    prompt_id: str
    author_id: str
    body: str
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(cls, prompt_id: str, author_id: str, body: str) -> "Comment":
        return cls(id=_new_id(), prompt_id=prompt_id, author_id=author_id, body=body)


__all__ = ["User", "Prompt", "Comment"]
