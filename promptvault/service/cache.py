from __future__ import annotations

import inspect
import json
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, Union

from promptvault.config import Settings
from promptvault.service.degrade import Clock, KVSBackedService
from promptvault.storage.kvs import KeyValueStore


@dataclass(frozen=True)
class CacheDurations:
    """Item lifetimes in seconds per data volatility class."""

    short: int = 300
    medium: int = 1800
    long: int = 3600
    very_long: int = 86400
    week: int = 604800

    @classmethod
    def from_settings(cls, settings: Settings) -> "CacheDurations":
        return cls(
            short=settings.cache_ttl_short,
            medium=settings.cache_ttl_medium,
            long=settings.cache_ttl_long,
            very_long=settings.cache_ttl_very_long,
            week=settings.cache_ttl_week,
        )


class CacheKeys:
    """Key builders shared by the service, the middleware and invalidation rules."""

    @staticmethod
    def user(user_id: str) -> str:
        return f"user:{user_id}"

    @staticmethod
    def prompt(prompt_id: str) -> str:
        return f"prompt:{prompt_id}"

    @staticmethod
    def prompt_stats(prompt_id: str) -> str:
        return f"prompt:stats:{prompt_id}"

    @staticmethod
    def user_prompts(user_id: str, page: int) -> str:
        return f"user:prompts:{user_id}:{page}"

    @staticmethod
    def popular_prompts(page: int) -> str:
        return f"popular:prompts:{page}"

    @staticmethod
    def profile(user_id: str) -> str:
        return f"profile:{user_id}"

    @staticmethod
    def comments(prompt_id: str, page: int) -> str:
        return f"comments:{prompt_id}:{page}"

    @staticmethod
    def followers(user_id: str) -> str:
        return f"followers:{user_id}"

    @staticmethod
    def following(user_id: str) -> str:
        return f"following:{user_id}"

    @staticmethod
    def pools(page: int, pool_type: Optional[str] = None) -> str:
        return f"pools:{pool_type or 'all'}:{page}"

    @staticmethod
    def community_calls(page: int) -> str:
        return f"calls:{page}"

    @staticmethod
    def saved(user_id: str) -> str:
        return f"saved:{user_id}"

    @staticmethod
    def user_ratings(user_id: str) -> str:
        return f"ratings:user:{user_id}"

    @staticmethod
    def prompt_ratings(prompt_id: str) -> str:
        return f"ratings:prompt:{prompt_id}"

    @staticmethod
    def search(query: str, page: int) -> str:
        return f"search:{query}:{page}"

    @staticmethod
    def trending_tags() -> str:
        return "trending:tags"

    @staticmethod
    def feed(user_id: str, page: int) -> str:
        return f"feed:{user_id}:{page}"

    @staticmethod
    def route(target: str) -> str:
        return f"route:{target}"

    @staticmethod
    def index(tag: str) -> str:
        return f"cache_index:{tag}"


@dataclass(frozen=True)
class InvalidationRule:
    """Keys derived from one entity; templates use ``{id}``."""

    keys: Tuple[str, ...] = ()
    patterns: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()

    def render(self, entity_id: str) -> Tuple[List[str], List[str], List[str]]:
        def _fill(templates: Iterable[str]) -> List[str]:
            return [template.format(id=entity_id) for template in templates]

        return _fill(self.keys), _fill(self.patterns), _fill(self.tags)


# Entity kind -> every cache family that may hold a stale copy of it.
# Comment and rating rules are keyed by the prompt they belong to; follow
# rules by the user whose follower lists changed. Listings, search pages and
# feeds embed like and comment counts and are cleared by prompt-level rules.
INVALIDATION_RULES: Dict[str, InvalidationRule] = {
    "prompt": InvalidationRule(
        keys=("prompt:{id}", "prompt:stats:{id}", "ratings:prompt:{id}"),
        patterns=(
            "prompt:{id}*",
            "comments:{id}*",
            "ratings:prompt:{id}*",
            "popular:prompts:*",
            "search:*",
            "feed:*",
            "trending:tags",
            "route:/api/prompts*",
        ),
        tags=("prompt:{id}", "prompts", "feeds"),
    ),
    "user": InvalidationRule(
        keys=(
            "user:{id}",
            "profile:{id}",
            "followers:{id}",
            "following:{id}",
            "saved:{id}",
            "ratings:user:{id}",
        ),
        patterns=("user:prompts:{id}:*", "route:/api/users/{id}*"),
        tags=("user:{id}",),
    ),
    "comment": InvalidationRule(
        keys=("prompt:{id}", "prompt:stats:{id}", "route:/api/prompts"),
        patterns=(
            "comments:{id}*",
            "popular:prompts:*",
            "search:*",
            "feed:*",
            "route:/api/prompts[?]*",
            "route:/api/prompts/{id}*",
        ),
        tags=("prompt:{id}", "comments:{id}", "prompts", "feeds"),
    ),
    "rating": InvalidationRule(
        keys=("prompt:{id}", "prompt:stats:{id}", "ratings:prompt:{id}"),
        patterns=(
            "ratings:prompt:{id}*",
            "popular:prompts:*",
            "search:*",
            "feed:*",
            "trending:tags",
            "route:/api/prompts*",
        ),
        tags=("prompt:{id}", "prompts", "feeds"),
    ),
    "follow": InvalidationRule(
        keys=("user:{id}", "profile:{id}", "followers:{id}", "following:{id}"),
        patterns=("feed:{id}:*", "route:/api/users/{id}*"),
        tags=("user:{id}", "feed:{id}"),
    ),
    "pool": InvalidationRule(
        patterns=("pools:*", "route:/api/pools*"),
        tags=("pools",),
    ),
    "community_call": InvalidationRule(
        patterns=("calls:*", "route:/api/community-calls*"),
        tags=("community_calls",),
    ),
}


class CacheService(KVSBackedService):
    """Read-through JSON cache with rule-driven fan-out invalidation.

    Values are stored as JSON text. Entries written with ``tags`` are also
    recorded in ``cache_index:<tag>`` sets so invalidation can find them
    without scanning the keyspace; pattern scans remain on by default and
    can be switched off with ``scan_invalidation=False``.
    """

    def __init__(
        self,
        kvs: KeyValueStore,
        *,
        durations: Optional[CacheDurations] = None,
        scan_invalidation: bool = True,
        clock: Optional[Clock] = None,
    ) -> None:
        super().__init__(kvs, clock=clock)
        self.durations = durations or CacheDurations()
        self.scan_invalidation = scan_invalidation

    async def get(self, key: str) -> Any:
        async def _get() -> Any:
            raw = await self.kvs.get(key)
            if raw is None:
                return None
            try:
                return json.loads(raw)
            except (json.JSONDecodeError, TypeError):
                self.logger.warning("cache_entry_malformed", cache_key=key)
                await self.kvs.delete(key)
                return None

        return await self._guard("cache_get_failed", _get, None, cache_key=key)

    async def set(
        self,
        key: str,
        value: Any,
        ttl: Optional[int] = None,
        tags: Iterable[str] = (),
    ) -> bool:
        payload = json.dumps(value, default=str)

        async def _set() -> bool:
            await self.kvs.set(key, payload, ex=ttl)
            for tag in tags:
                index_key = CacheKeys.index(tag)
                await self.kvs.sadd(index_key, key)
                if ttl is None:
                    continue
                # Extend only; the index outlives its longest-lived member
                if await self.kvs.ttl(index_key) < ttl:
                    await self.kvs.expire(index_key, ttl)
            return True

        return await self._guard("cache_set_failed", _set, False, cache_key=key)

    async def delete(self, key: Union[str, Iterable[str]]) -> int:
        keys = [key] if isinstance(key, str) else list(key)
        if not keys:
            return 0
        return await self._guard(
            "cache_delete_failed", lambda: self.kvs.delete(*keys), 0
        )

    async def delete_by_pattern(self, pattern: str) -> int:
        async def _delete() -> int:
            keys = await self.kvs.keys(pattern)
            return await self.kvs.delete(*keys) if keys else 0

        return await self._guard(
            "cache_delete_pattern_failed", _delete, 0, pattern=pattern
        )

    async def delete_by_tag(self, tag: str) -> int:
        async def _delete() -> int:
            index_key = CacheKeys.index(tag)
            keys = await self.kvs.smembers(index_key)
            deleted = await self.kvs.delete(*keys) if keys else 0
            await self.kvs.delete(index_key)
            return deleted

        return await self._guard("cache_delete_tag_failed", _delete, 0, tag=tag)

    async def remember(
        self,
        key: str,
        ttl: Optional[int],
        compute: Callable[[], Union[Any, Awaitable[Any]]],
        tags: Iterable[str] = (),
    ) -> Any:
        """Return the cached value or compute, store and return it."""
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = compute()
        if inspect.isawaitable(value):
            value = await value
        if value is not None:
            await self.set(key, value, ttl, tags=tags)
        return value

    async def invalidate(self, kind: str, entity_id: str) -> int:
        """Drop every cache entry that may hold a stale copy of an entity."""
        rule = INVALIDATION_RULES.get(kind)
        if rule is None:
            raise ValueError(f"no cache invalidation rule for {kind!r}")
        keys, patterns, tags = rule.render(entity_id)
        deleted = await self.delete(keys)
        for tag in tags:
            deleted += await self.delete_by_tag(tag)
        if self.scan_invalidation:
            for pattern in patterns:
                deleted += await self.delete_by_pattern(pattern)
        self.logger.info(
            "cache_invalidated", kind=kind, entity_id=entity_id, deleted=deleted
        )
        return deleted

    # entity wrappers ------------------------------------------------------

    async def cache_user(self, user_id: str, data: Any) -> bool:
        return await self.set(
            CacheKeys.user(user_id), data, self.durations.long, tags=(f"user:{user_id}",)
        )

    async def get_user(self, user_id: str) -> Any:
        return await self.get(CacheKeys.user(user_id))

    async def cache_prompt(self, prompt_id: str, data: Any) -> bool:
        return await self.set(
            CacheKeys.prompt(prompt_id),
            data,
            self.durations.medium,
            tags=(f"prompt:{prompt_id}",),
        )

    async def get_prompt(self, prompt_id: str) -> Any:
        return await self.get(CacheKeys.prompt(prompt_id))

    async def cache_popular_prompts(self, page: int, prompts: List[Any]) -> bool:
        return await self.set(
            CacheKeys.popular_prompts(page), prompts, self.durations.medium, tags=("prompts",)
        )

    async def get_popular_prompts(self, page: int) -> List[Any]:
        result = await self.get(CacheKeys.popular_prompts(page))
        return result if isinstance(result, list) else []

    async def cache_search_results(self, query: str, page: int, results: Any) -> bool:
        return await self.set(
            CacheKeys.search(query, page), results, self.durations.short, tags=("prompts",)
        )

    async def get_search_results(self, query: str, page: int) -> Any:
        return await self.get(CacheKeys.search(query, page))

    async def cache_trending_tags(self, tags: Any) -> bool:
        return await self.set(
            CacheKeys.trending_tags(), tags, self.durations.long, tags=("prompts",)
        )

    async def get_trending_tags(self) -> Any:
        return await self.get(CacheKeys.trending_tags())

    async def cache_user_feed(self, user_id: str, page: int, feed: Any) -> bool:
        return await self.set(
            CacheKeys.feed(user_id, page),
            feed,
            self.durations.short,
            tags=(f"user:{user_id}", f"feed:{user_id}", "feeds"),
        )

    async def get_user_feed(self, user_id: str, page: int) -> Any:
        return await self.get(CacheKeys.feed(user_id, page))

    async def invalidate_prompt_caches(self, prompt_id: str) -> int:
        return await self.invalidate("prompt", prompt_id)

    async def invalidate_user_caches(self, user_id: str) -> int:
        return await self.invalidate("user", user_id)


__all__ = [
    "CacheDurations",
    "CacheKeys",
    "CacheService",
    "InvalidationRule",
    "INVALIDATION_RULES",
]
