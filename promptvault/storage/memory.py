from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set, Tuple

from promptvault.logging import get_logger
from promptvault.storage.errors import ConstraintViolation
from promptvault.storage.models import Comment, Prompt, User


class MemoryStore:
    """In-memory system of record for users, prompts, comments and follows.

    Stands in for the durable document store; nothing here expires.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.credentials: Dict[str, Tuple[str, str]] = {}
        self.prompts: Dict[str, Prompt] = {}
        self.comments: Dict[str, List[Comment]] = {}
        self.likes: Dict[str, Set[str]] = {}
        self.follows: Dict[str, Set[str]] = {}
        # RLock for all data operations to allow nested acquisitions
        self._data_lock = threading.RLock()

    # users -----------------------------------------------------------------

    def create_user(self, email: str, username: str, *, role: str = "user") -> User:
        email = email.strip().lower()
        with self._data_lock:
            if any(existing.email == email for existing in self.users.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            user = User(id=str(uuid.uuid4()), email=email, username=username, role=role)
            self.users[user.id] = user
            self.logger.info("user_created", user_id=user.id, role=role)
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        email = email.strip().lower()
        with self._data_lock:
            return next((u for u in self.users.values() if u.email == email), None)

    def get_user_by_login(self, identifier: str) -> Optional[User]:
        """Resolve an email address or a username."""
        if "@" in identifier:
            return self.get_user_by_email(identifier)
        with self._data_lock:
            return next(
                (u for u in self.users.values() if u.username == identifier), None
            )

    def save_password(self, user_id: str, password_hash: str, password_algo: str) -> None:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": user_id})
            self.credentials[user_id] = (password_hash, password_algo)

    def get_password_record(self, user_id: str) -> Optional[Tuple[str, str]]:
        with self._data_lock:
            return self.credentials.get(user_id)

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user = replace(user, email_verified=True)
            self.users[user_id] = user
            return user

    # prompts ---------------------------------------------------------------

    def create_prompt(
        self, author_id: str, title: str, body: str, tags: Optional[List[str]] = None
    ) -> Prompt:
        with self._data_lock:
            if author_id not in self.users:
                raise ConstraintViolation("author not found", {"author_id": author_id})
            prompt = Prompt.new(author_id, title, body, tags)
            self.prompts[prompt.id] = prompt
            return prompt

    def get_prompt(self, prompt_id: str) -> Optional[Prompt]:
        with self._data_lock:
            return self.prompts.get(prompt_id)

    def list_prompts(
        self, *, query: Optional[str] = None, page: int = 1, page_size: int = 20
    ) -> List[Prompt]:
        with self._data_lock:
            prompts = sorted(
                self.prompts.values(), key=lambda p: p.created_at, reverse=True
            )
        if query:
            needle = query.lower()
            prompts = [
                p
                for p in prompts
                if needle in p.title.lower()
                or needle in p.body.lower()
                or any(needle == tag.lower() for tag in p.tags)
            ]
        start = max(0, (page - 1) * page_size)
        return prompts[start : start + page_size]

    def list_prompts_by_author(self, author_id: str) -> List[Prompt]:
        with self._data_lock:
            return [p for p in self.prompts.values() if p.author_id == author_id]

    def update_prompt(
        self,
        prompt_id: str,
        *,
        title: Optional[str] = None,
        body: Optional[str] = None,
        tags: Optional[List[str]] = None,
    ) -> Optional[Prompt]:
        with self._data_lock:
            prompt = self.prompts.get(prompt_id)
            if not prompt:
                return None
            prompt = replace(
                prompt,
                title=title if title is not None else prompt.title,
                body=body if body is not None else prompt.body,
                tags=list(tags) if tags is not None else prompt.tags,
                updated_at=datetime.now(timezone.utc),
            )
            self.prompts[prompt_id] = prompt
            return prompt

    def delete_prompt(self, prompt_id: str) -> bool:
        with self._data_lock:
            removed = self.prompts.pop(prompt_id, None)
            self.comments.pop(prompt_id, None)
            self.likes.pop(prompt_id, None)
            return removed is not None

    def toggle_like(self, prompt_id: str, user_id: str) -> Tuple[bool, int]:
        """Like or unlike; returns (liked, like_count)."""
        with self._data_lock:
            prompt = self.prompts.get(prompt_id)
            if not prompt:
                raise ConstraintViolation("prompt not found", {"prompt_id": prompt_id})
            likers = self.likes.setdefault(prompt_id, set())
            liked = user_id not in likers
            if liked:
                likers.add(user_id)
            else:
                likers.discard(user_id)
            self.prompts[prompt_id] = replace(prompt, like_count=len(likers))
            return liked, len(likers)

    def trending_tags(self, limit: int = 10) -> List[Tuple[str, int]]:
        counts: Dict[str, int] = {}
        with self._data_lock:
            for prompt in self.prompts.values():
                for tag in prompt.tags:
                    counts[tag] = counts.get(tag, 0) + 1 + prompt.like_count
        return sorted(counts.items(), key=lambda item: (-item[1], item[0]))[:limit]

    # comments --------------------------------------------------------------

    def add_comment(self, prompt_id: str, author_id: str, body: str) -> Comment:
        with self._data_lock:
            prompt = self.prompts.get(prompt_id)
            if not prompt:
                raise ConstraintViolation("prompt not found", {"prompt_id": prompt_id})
            comment = Comment.new(prompt_id, author_id, body)
            self.comments.setdefault(prompt_id, []).append(comment)
            self.prompts[prompt_id] = replace(
                prompt, comment_count=len(self.comments[prompt_id])
            )
            return comment

    def list_comments(
        self, prompt_id: str, *, page: int = 1, page_size: int = 20
    ) -> List[Comment]:
        with self._data_lock:
            comments = list(self.comments.get(prompt_id, []))
        start = max(0, (page - 1) * page_size)
        return comments[start : start + page_size]

    # follows ---------------------------------------------------------------

    def follow(self, follower_id: str, followee_id: str) -> bool:
        """Toggle a follow edge; returns True when now following."""
        if follower_id == followee_id:
            raise ConstraintViolation("cannot follow yourself", {"user_id": followee_id})
        with self._data_lock:
            if followee_id not in self.users:
                raise ConstraintViolation("user not found", {"user_id": followee_id})
            following = self.follows.setdefault(follower_id, set())
            if followee_id in following:
                following.discard(followee_id)
                return False
            following.add(followee_id)
            return True

    def following(self, user_id: str) -> Set[str]:
        with self._data_lock:
            return set(self.follows.get(user_id, set()))

    def followers(self, user_id: str) -> Set[str]:
        with self._data_lock:
            return {
                follower
                for follower, followees in self.follows.items()
                if user_id in followees
            }


__all__ = ["MemoryStore"]
