from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

from promptvault.config import Settings
from promptvault.logging import get_logger
from promptvault.service.degrade import KVSBackedService

logger = get_logger(__name__)

DEFAULT_WINDOW_MS = 60_000
DEFAULT_MESSAGE = "Too many requests, please try again later"


def _normalize_window(window_ms: int, name: str) -> int:
    if window_ms <= 0:
        logger.warning(
            "rate_limit_invalid_window",
            policy=name,
            window_ms=window_ms,
            fallback_ms=DEFAULT_WINDOW_MS,
        )
        return DEFAULT_WINDOW_MS
    return window_ms


class KeyScope(str, Enum):
    """Which request identity a policy counts against."""

    IP = "ip"
    # authenticated principal id, falling back to the client IP
    PRINCIPAL = "principal"


@dataclass(frozen=True)
class RateLimitPolicy:
    name: str
    window_ms: int
    max_requests: int
    message: str = DEFAULT_MESSAGE
    prefix: Optional[str] = None
    scope: KeyScope = KeyScope.IP
    skip_successful_requests: bool = False
    skip_failed_requests: bool = False

    @property
    def enabled(self) -> bool:
        return self.max_requests > 0

    def derive_key(self, ip: Optional[str], principal: Optional[str] = None) -> str:
        identity = ip or "unknown"
        if self.scope is KeyScope.PRINCIPAL and principal:
            identity = principal
        return f"{self.prefix}:{identity}" if self.prefix else identity

    def should_count(self, status_code: int) -> bool:
        succeeded = status_code < 400
        if self.skip_successful_requests and succeeded:
            return False
        if self.skip_failed_requests and not succeeded:
            return False
        return True


@dataclass
class RateLimitDecision:
    allowed: bool
    limit: int
    remaining: int
    reset: int
    retry_after: int = 0
    counter_key: Optional[str] = None
    window_seconds: int = 0
    degraded: bool = False
    policy: Optional[RateLimitPolicy] = None

    def headers(self) -> Dict[str, str]:
        if self.limit <= 0:
            return {}
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def _counter_key(derived: str, window_start: int) -> str:
    return f"rate_limit:{derived}:{window_start}"


class RateLimiter(KVSBackedService):
    """Fixed-window request counters shared by every API worker.

    ``check`` is read-only; ``record`` performs the INCR + EXPIRE once the
    response outcome is known. Any KVS failure fails open.
    """

    def _window(self, window_ms: int, now_ms: int) -> tuple[int, int]:
        window_start = (now_ms // window_ms) * window_ms
        return window_start, window_start + window_ms

    async def _read_count(self, key: str) -> int:
        raw = await self.kvs.get(key)
        if raw is None:
            return 0
        try:
            return int(raw)
        except ValueError:
            self.logger.warning("rate_limit_counter_malformed", counter_key=key)
            return 0

    async def check(self, policy: RateLimitPolicy, key: str) -> RateLimitDecision:
        if not policy.enabled:
            return RateLimitDecision(
                allowed=True, limit=0, remaining=0, reset=0, policy=policy
            )
        window_ms = _normalize_window(policy.window_ms, policy.name)
        now_ms = self._now_ms()
        window_start, window_end = self._window(window_ms, now_ms)
        counter_key = _counter_key(key, window_start)
        reset = math.ceil(window_end / 1000)
        window_seconds = math.ceil(window_ms / 1000)

        count = await self._guard(
            "rate_limit_check_failed",
            lambda: self._read_count(counter_key),
            None,
            policy=policy.name,
        )
        if count is None:
            return RateLimitDecision(
                allowed=True,
                limit=policy.max_requests,
                remaining=max(0, policy.max_requests - 1),
                reset=reset,
                counter_key=counter_key,
                window_seconds=window_seconds,
                degraded=True,
                policy=policy,
            )
        if count >= policy.max_requests:
            retry_after = max(1, math.ceil((window_end - now_ms) / 1000))
            self.logger.info(
                "rate_limit_exceeded",
                policy=policy.name,
                count=count,
                limit=policy.max_requests,
                retry_after=retry_after,
            )
            return RateLimitDecision(
                allowed=False,
                limit=policy.max_requests,
                remaining=0,
                reset=reset,
                retry_after=retry_after,
                counter_key=counter_key,
                window_seconds=window_seconds,
                policy=policy,
            )
        return RateLimitDecision(
            allowed=True,
            limit=policy.max_requests,
            remaining=max(0, policy.max_requests - count - 1),
            reset=reset,
            counter_key=counter_key,
            window_seconds=window_seconds,
            policy=policy,
        )

    async def _increment(self, key: str, ttl_seconds: int) -> int:
        count = await self.kvs.incr(key)
        await self.kvs.expire(key, ttl_seconds)
        return count

    async def record(self, decision: RateLimitDecision) -> Optional[int]:
        """Count one request against the decision's window.

        Returns the new counter value, or ``None`` when nothing was counted.
        """
        if not decision.allowed or not decision.counter_key or decision.degraded:
            return None
        return await self._guard(
            "rate_limit_record_failed",
            lambda: self._increment(decision.counter_key, decision.window_seconds),
            None,
            policy=decision.policy.name if decision.policy else None,
        )

    async def check_and_count(self, policy: RateLimitPolicy, key: str) -> RateLimitDecision:
        decision = await self.check(policy, key)
        if decision.allowed:
            await self.record(decision)
        return decision

    # action-level helpers -------------------------------------------------

    def _action_key(self, principal: str, action: str, window_ms: int) -> tuple[str, int]:
        window_ms = _normalize_window(window_ms, action)
        window_start, _ = self._window(window_ms, self._now_ms())
        return _counter_key(f"{action}:{principal}", window_start), window_ms

    async def is_rate_limited(
        self, principal: str, action: str, max_requests: int, window_ms: int
    ) -> bool:
        key, _ = self._action_key(principal, action, window_ms)
        count = await self._guard(
            "rate_limit_check_failed", lambda: self._read_count(key), 0, action=action
        )
        return count >= max_requests

    async def increment_counter(self, principal: str, action: str, window_ms: int) -> None:
        key, window_ms = self._action_key(principal, action, window_ms)
        await self._guard(
            "rate_limit_record_failed",
            lambda: self._increment(key, math.ceil(window_ms / 1000)),
            None,
            action=action,
        )

    async def remaining_requests(
        self, principal: str, action: str, max_requests: int, window_ms: int
    ) -> int:
        key, _ = self._action_key(principal, action, window_ms)
        count = await self._guard(
            "rate_limit_check_failed", lambda: self._read_count(key), 0, action=action
        )
        return max(0, max_requests - count)

    async def reset(self, principal: str, action: Optional[str] = None) -> int:
        """Drop every window counter for ``principal`` (optionally one action)."""
        if action:
            patterns = [f"rate_limit:{action}:{principal}:*"]
        else:
            # bare IP counters plus every prefixed policy or action window
            patterns = [f"rate_limit:{principal}:*", f"rate_limit:*:{principal}:*"]

        async def _reset() -> int:
            keys: set[str] = set()
            for pattern in patterns:
                keys.update(await self.kvs.keys(pattern))
            return await self.kvs.delete(*keys) if keys else 0

        deleted = await self._guard(
            "rate_limit_reset_failed", _reset, 0, action=action
        )
        self.logger.info("rate_limit_reset", action=action, deleted=deleted)
        return deleted


def build_policies(settings: Settings) -> Dict[str, RateLimitPolicy]:
    """Named policies used by the HTTP layer, sized from settings."""

    def _policy(name: str, message: str, **kwargs) -> RateLimitPolicy:
        window_ms = getattr(settings, f"rate_limit_{name}_window_ms")
        max_requests = getattr(settings, f"rate_limit_{name}_max")
        if not settings.rate_limit_enabled:
            max_requests = 0
        return RateLimitPolicy(
            name=name,
            window_ms=_normalize_window(window_ms, name),
            max_requests=max_requests,
            message=message,
            **kwargs,
        )

    policies = [
        _policy("global", "Too many API requests from this IP, please try again later"),
        _policy(
            "auth",
            "Too many authentication attempts, please try again later",
            prefix="auth",
        ),
        _policy(
            "social",
            "Too many social actions, please slow down",
            prefix="social",
            scope=KeyScope.PRINCIPAL,
        ),
        _policy(
            "upload",
            "Upload limit exceeded, please try again later",
            prefix="upload",
            scope=KeyScope.PRINCIPAL,
        ),
        _policy(
            "search",
            "Too many search requests, please slow down",
            prefix="search",
        ),
        _policy(
            "comment",
            "Too many comments, please wait before commenting again",
            prefix="comment",
            scope=KeyScope.PRINCIPAL,
        ),
        _policy(
            "creation",
            "Creation limit exceeded, please try again later",
            prefix="create",
            scope=KeyScope.PRINCIPAL,
        ),
    ]
    return {policy.name: policy for policy in policies}


__all__ = [
    "KeyScope",
    "RateLimitPolicy",
    "RateLimitDecision",
    "RateLimiter",
    "build_policies",
]
