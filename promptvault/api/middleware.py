from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

from promptvault.api.error_handling import rate_limited_response
from promptvault.logging import get_logger
from promptvault.service.cache import CacheKeys
from promptvault.service.rate_limit import RateLimitDecision
from promptvault.service.runtime import get_runtime

logger = get_logger(__name__)

PENDING_COUNTS_ATTR = "rate_limit_pending"


def client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def add_pending_count(request: Request, decision: RateLimitDecision) -> None:
    """Queue a per-route count to be recorded once the response status is known."""
    pending: Optional[List[RateLimitDecision]] = getattr(
        request.state, PENDING_COUNTS_ATTR, None
    )
    if pending is None:
        pending = []
        setattr(request.state, PENDING_COUNTS_ATTR, pending)
    pending.append(decision)


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Apply the global IP policy, then record deferred counts after the handler.

    Counting happens after ``call_next`` so each policy's skip flags can look
    at the final status code. Route policies register their decisions via
    ``add_pending_count``.
    """

    def __init__(self, app, *, path_prefix: str = "/api") -> None:
        super().__init__(app)
        self.path_prefix = path_prefix

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not request.url.path.startswith(self.path_prefix):
            return await call_next(request)
        runtime = get_runtime()
        policy = runtime.rate_limit_policies["global"]
        setattr(request.state, PENDING_COUNTS_ATTR, [])

        decision = await runtime.rate_limiter.check(policy, policy.derive_key(client_ip(request)))
        if not decision.allowed:
            return rate_limited_response(policy.message, decision.retry_after, decision.headers())

        response = await call_next(request)

        pending = [decision, *getattr(request.state, PENDING_COUNTS_ATTR, [])]
        for item in pending:
            if item.policy is not None and item.policy.should_count(response.status_code):
                await runtime.rate_limiter.record(item)
        # Most specific enabled policy wins, also for error responses
        for item in reversed(pending):
            headers = item.headers()
            if headers:
                for name, value in headers.items():
                    response.headers[name] = value
                break
        return response


@dataclass(frozen=True)
class CacheRule:
    """A cacheable GET route: path regex, duration class and index tags.

    Tag templates may reference named groups of ``pattern``.
    """

    pattern: str
    duration: str
    tags: Tuple[str, ...] = ()

    def match(self, path: str) -> Optional[List[str]]:
        found = re.match(self.pattern, path)
        if not found:
            return None
        params = found.groupdict()
        return [tag.format(**params) for tag in self.tags]


DEFAULT_CACHE_RULES: Tuple[CacheRule, ...] = (
    CacheRule(r"^/api/prompts$", "short", ("prompts",)),
    CacheRule(r"^/api/prompts/(?P<id>[^/]+)$", "medium", ("prompt:{id}",)),
    CacheRule(
        r"^/api/prompts/(?P<id>[^/]+)/comments$",
        "short",
        ("comments:{id}", "prompt:{id}"),
    ),
    CacheRule(r"^/api/users/(?P<id>[^/]+)$", "long", ("user:{id}",)),
)


class ResponseCacheMiddleware(BaseHTTPMiddleware):
    """Serve public GET responses from the KVS and store fresh 2xx JSON bodies.

    Requests that carry credentials bypass the cache entirely so
    subject-scoped data is never shared between callers.
    """

    def __init__(self, app, *, rules: Sequence[CacheRule] = DEFAULT_CACHE_RULES) -> None:
        super().__init__(app)
        self.rules = tuple(rules)

    def _match(self, path: str) -> Optional[Tuple[CacheRule, List[str]]]:
        for rule in self.rules:
            tags = rule.match(path)
            if tags is not None:
                return rule, tags
        return None

    @staticmethod
    def _has_credentials(request: Request) -> bool:
        return bool(
            request.headers.get("authorization")
            or request.headers.get("session_id")
            or request.cookies.get("session_id")
        )

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.method != "GET" or self._has_credentials(request):
            return await call_next(request)
        matched = self._match(request.url.path)
        if matched is None:
            return await call_next(request)
        rule, tags = matched
        runtime = get_runtime()
        target = request.url.path
        if request.url.query:
            target = f"{target}?{request.url.query}"
        cache_key = CacheKeys.route(target)

        cached = await runtime.cache.get(cache_key)
        if isinstance(cached, dict) and "body" in cached:
            return JSONResponse(
                content=cached["body"],
                status_code=int(cached.get("status", 200)),
                headers={"X-Cache": "HIT"},
            )

        response = await call_next(request)
        content_type = response.headers.get("content-type", "")
        if 200 <= response.status_code < 300 and content_type.startswith("application/json"):
            body = b"".join([chunk async for chunk in response.body_iterator])
            try:
                payload = json.loads(body)
            except ValueError:
                logger.warning("response_cache_unparseable_body", path=request.url.path)
            else:
                await runtime.cache.set(
                    cache_key,
                    {"status": response.status_code, "body": payload},
                    getattr(runtime.cache.durations, rule.duration),
                    tags=tags,
                )
            response = Response(
                content=body,
                status_code=response.status_code,
                headers=dict(response.headers),
                media_type=response.media_type,
            )
        response.headers["X-Cache"] = "MISS"
        return response


__all__ = [
    "CacheRule",
    "DEFAULT_CACHE_RULES",
    "RateLimitMiddleware",
    "ResponseCacheMiddleware",
    "add_pending_count",
    "client_ip",
]
