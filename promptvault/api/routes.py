from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response

from promptvault.api.middleware import add_pending_count, client_ip
from promptvault.api.schemas import (
    AuthResponse,
    CommentCreateRequest,
    CommentResponse,
    EmailVerificationConfirm,
    Envelope,
    LoginRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    PromptCreateRequest,
    PromptResponse,
    PromptUpdateRequest,
    RateLimitResetRequest,
    RegisterRequest,
    SessionInfo,
    UserProfileResponse,
)
from promptvault.logging import get_logger
from promptvault.service.auth import AuthContext
from promptvault.service.cache import CacheKeys
from promptvault.service.errors import (
    AuthenticationError,
    ForbiddenError,
    NotFoundError,
    RateLimitedError,
    ServerError,
    ValidationError,
)
from promptvault.service.rate_limit import RateLimitDecision
from promptvault.service.runtime import get_runtime
from promptvault.storage.models import Prompt, User

logger = get_logger(__name__)

router = APIRouter(prefix="/api")

SESSION_COOKIE = "session_id"
PAGE_SIZE = 20


# dependencies --------------------------------------------------------------


async def get_optional_user(
    authorization: Optional[str] = Header(None),
    session_id: Optional[str] = Header(None, convert_underscores=False),
    session_cookie: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
) -> Optional[AuthContext]:
    if not authorization and not session_id and not session_cookie:
        return None
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization, session_id or session_cookie)


async def get_user(
    principal: Optional[AuthContext] = Depends(get_optional_user),
) -> AuthContext:
    if not principal:
        raise AuthenticationError("invalid session")
    return principal


async def get_admin_user(principal: AuthContext = Depends(get_user)) -> AuthContext:
    if principal.role != "admin":
        raise ForbiddenError("admin access required")
    return principal


def rate_limited(name: str):
    """Dependency enforcing the named policy.

    Counting and the X-RateLimit headers are left to ``RateLimitMiddleware``
    so they reflect the final response status.
    """

    async def _enforce(
        request: Request,
        principal: Optional[AuthContext] = Depends(get_optional_user),
    ) -> RateLimitDecision:
        runtime = get_runtime()
        policy = runtime.rate_limit_policies[name]
        key = policy.derive_key(
            client_ip(request), principal.user_id if principal else None
        )
        decision = await runtime.rate_limiter.check(policy, key)
        if not decision.allowed:
            raise RateLimitedError(
                policy.message,
                retry_after=decision.retry_after,
                limit=decision.limit,
                reset=decision.reset,
            )
        add_pending_count(request, decision)
        return decision

    return _enforce


# helpers -------------------------------------------------------------------


def _prompt_payload(prompt: Prompt) -> Dict[str, Any]:
    return PromptResponse(
        id=prompt.id,
        author_id=prompt.author_id,
        title=prompt.title,
        body=prompt.body,
        tags=list(prompt.tags),
        like_count=prompt.like_count,
        comment_count=prompt.comment_count,
        created_at=prompt.created_at,
        updated_at=prompt.updated_at,
    ).model_dump(mode="json")


def _profile_payload(user: User) -> Dict[str, Any]:
    store = get_runtime().store
    return UserProfileResponse(
        id=user.id,
        username=user.username,
        role=user.role,
        bio=user.bio,
        email_verified=user.email_verified,
        prompt_count=len(store.list_prompts_by_author(user.id)),
        follower_count=len(store.followers(user.id)),
        following_count=len(store.following(user.id)),
    ).model_dump(mode="json")


def _get_prompt_or_404(prompt_id: str) -> Prompt:
    prompt = get_runtime().store.get_prompt(prompt_id)
    if not prompt:
        raise NotFoundError("prompt not found", detail={"prompt_id": prompt_id})
    return prompt


def _get_owned_prompt(prompt_id: str, principal: AuthContext) -> Prompt:
    prompt = _get_prompt_or_404(prompt_id)
    if prompt.author_id != principal.user_id and principal.role != "admin":
        raise ForbiddenError("not the prompt author")
    return prompt


def _apply_session_cookie(response: Response, session_id: str, max_age: int) -> None:
    response.set_cookie(
        SESSION_COOKIE,
        session_id,
        httponly=True,
        secure=True,
        samesite="lax",
        max_age=max_age,
        path="/",
    )


def _session_max_age(remember_me: bool) -> int:
    settings = get_runtime().settings
    return settings.remember_me_ttl_seconds if remember_me else settings.session_ttl_seconds


def _test_only(value: Optional[str]) -> Optional[str]:
    # Out-of-band delivery is external; tests read tokens from the response
    return value if get_runtime().settings.test_mode else None


# health & stats ------------------------------------------------------------


@router.get("/health", response_model=Envelope, tags=["health"])
async def health():
    runtime = get_runtime()
    kvs_ok = await runtime.cache.health_check()
    active_users = await runtime.presence.active_count()
    if not kvs_ok:
        logger.warning("health_kvs_unreachable")
    return Envelope(
        status="ok",
        data={
            "status": "healthy" if kvs_ok else "degraded",
            "kvs": "ok" if kvs_ok else "unavailable",
            "active_users": active_users,
        },
    )


@router.get("/stats/active-users", response_model=Envelope, tags=["stats"])
async def active_users():
    runtime = get_runtime()
    count = await runtime.presence.active_count()
    return Envelope(
        status="ok",
        data={
            "active_users": count,
            "window_seconds": runtime.presence.window_seconds,
        },
    )


# auth ----------------------------------------------------------------------


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(
    body: RegisterRequest,
    request: Request,
    response: Response,
    _: RateLimitDecision = Depends(rate_limited("auth")),
):
    runtime = get_runtime()
    user, session_id, tokens, verification_token = await runtime.auth.register(
        body.email,
        body.password,
        body.username,
        remember_me=body.remember_me,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_session_cookie(response, session_id, _session_max_age(body.remember_me))
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            username=user.username,
            role=user.role,
            session_id=session_id,
            access_token=tokens["access_token"],
            token_type=tokens["token_type"],
            expires_at=tokens["expires_at"],
            verification_token=_test_only(verification_token),
        ),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    _: RateLimitDecision = Depends(rate_limited("auth")),
):
    runtime = get_runtime()
    user, session_id, tokens = await runtime.auth.login(
        body.identifier,
        body.password,
        remember_me=body.remember_me,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_session_cookie(response, session_id, _session_max_age(body.remember_me))
    return Envelope(
        status="ok",
        data=AuthResponse(
            user_id=user.id,
            username=user.username,
            role=user.role,
            session_id=session_id,
            access_token=tokens["access_token"],
            token_type=tokens["token_type"],
            expires_at=tokens["expires_at"],
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(response: Response, principal: AuthContext = Depends(get_user)):
    await get_runtime().auth.logout(principal)
    response.delete_cookie(SESSION_COOKIE, path="/")
    return Envelope(status="ok", data={"logged_out": True})


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(response: Response, principal: AuthContext = Depends(get_user)):
    removed = await get_runtime().auth.logout_all(principal)
    response.delete_cookie(SESSION_COOKIE, path="/")
    return Envelope(status="ok", data={"logged_out": True, "sessions_removed": removed})


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(principal: AuthContext = Depends(get_user)):
    user = get_runtime().store.get_user(principal.user_id)
    if not user:
        raise NotFoundError("user not found")
    return Envelope(
        status="ok",
        data={
            "id": user.id,
            "email": user.email,
            "username": user.username,
            "role": user.role,
            "email_verified": user.email_verified,
            "session_id": principal.session_id,
        },
    )


@router.get("/auth/sessions", response_model=Envelope, tags=["auth"])
async def list_sessions(principal: AuthContext = Depends(get_user)):
    records = await get_runtime().sessions.list_for_subject(principal.user_id)
    sessions: List[SessionInfo] = [
        SessionInfo(
            session_id=record.session_id,
            last_activity=record.last_activity,
            ip_address=record.ip_address,
            user_agent=record.user_agent,
            remember_me=record.remember_me,
            current=record.session_id == principal.session_id,
        )
        for record in records
    ]
    return Envelope(status="ok", data={"sessions": sessions})


@router.post("/auth/password-reset/request", response_model=Envelope, tags=["auth"])
async def request_password_reset(
    body: PasswordResetRequest,
    _: RateLimitDecision = Depends(rate_limited("auth")),
):
    token = await get_runtime().auth.request_password_reset(body.email)
    # Same answer for known and unknown addresses
    data: Dict[str, Any] = {"requested": True}
    if _test_only(token):
        data["token"] = token
    return Envelope(status="ok", data=data)


@router.post("/auth/password-reset/confirm", response_model=Envelope, tags=["auth"])
async def confirm_password_reset(
    body: PasswordResetConfirm,
    _: RateLimitDecision = Depends(rate_limited("auth")),
):
    ok = await get_runtime().auth.complete_password_reset(body.token, body.new_password)
    if not ok:
        raise ValidationError("invalid or expired token", detail={"field": "token"})
    return Envelope(status="ok", data={"password_reset": True})


@router.post("/auth/verify-email/request", response_model=Envelope, tags=["auth"])
async def request_email_verification(principal: AuthContext = Depends(get_user)):
    runtime = get_runtime()
    user = runtime.store.get_user(principal.user_id)
    if not user:
        raise NotFoundError("user not found")
    if user.email_verified:
        return Envelope(status="ok", data={"email_verified": True})
    token = await runtime.auth.request_email_verification(user)
    if not token:
        raise ServerError("could not issue a verification token, please retry")
    data: Dict[str, Any] = {"requested": True}
    if _test_only(token):
        data["token"] = token
    return Envelope(status="ok", data=data)


@router.post("/auth/verify-email/confirm", response_model=Envelope, tags=["auth"])
async def confirm_email_verification(body: EmailVerificationConfirm):
    runtime = get_runtime()
    if not await runtime.auth.complete_email_verification(body.token):
        raise ValidationError("invalid or expired token", detail={"field": "token"})
    return Envelope(status="ok", data={"email_verified": True})


# prompts -------------------------------------------------------------------


@router.get("/prompts", response_model=Envelope, tags=["prompts"])
async def list_prompts(
    q: Optional[str] = Query(None, max_length=200),
    sort: str = Query("recent", pattern="^(recent|popular)$"),
    page: int = Query(1, ge=1, le=1000),
    _: RateLimitDecision = Depends(rate_limited("search")),
):
    runtime = get_runtime()
    cache = runtime.cache
    if q:
        cached = await cache.get_search_results(q, page)
        if cached is None:
            prompts = runtime.store.list_prompts(query=q, page=page, page_size=PAGE_SIZE)
            cached = [_prompt_payload(prompt) for prompt in prompts]
            await cache.cache_search_results(q, page, cached)
        items = cached
    elif sort == "popular":
        items = await cache.get_popular_prompts(page)
        if not items:
            ranked = sorted(
                runtime.store.list_prompts(page=1, page_size=PAGE_SIZE * page),
                key=lambda p: (-p.like_count, -p.comment_count),
            )
            items = [_prompt_payload(p) for p in ranked[(page - 1) * PAGE_SIZE :]]
            if items:
                await cache.cache_popular_prompts(page, items)
    else:
        prompts = runtime.store.list_prompts(page=page, page_size=PAGE_SIZE)
        items = [_prompt_payload(prompt) for prompt in prompts]
    return Envelope(status="ok", data={"items": items, "page": page})


@router.post("/prompts", response_model=Envelope, status_code=201, tags=["prompts"])
async def create_prompt(
    body: PromptCreateRequest,
    principal: AuthContext = Depends(get_user),
    _: RateLimitDecision = Depends(rate_limited("creation")),
):
    runtime = get_runtime()
    prompt = runtime.store.create_prompt(
        principal.user_id, body.title, body.body, body.tags
    )
    await runtime.cache.invalidate_prompt_caches(prompt.id)
    await runtime.cache.invalidate_user_caches(principal.user_id)
    logger.info("prompt_created", prompt_id=prompt.id, author_id=principal.user_id)
    return Envelope(status="ok", data=_prompt_payload(prompt))


@router.get("/prompts/{prompt_id}", response_model=Envelope, tags=["prompts"])
async def get_prompt(prompt_id: str):
    cache = get_runtime().cache
    payload = await cache.get_prompt(prompt_id)
    if payload is None:
        payload = _prompt_payload(_get_prompt_or_404(prompt_id))
        await cache.cache_prompt(prompt_id, payload)
    return Envelope(status="ok", data=payload)


@router.patch("/prompts/{prompt_id}", response_model=Envelope, tags=["prompts"])
async def update_prompt(
    prompt_id: str,
    body: PromptUpdateRequest,
    principal: AuthContext = Depends(get_user),
    _: RateLimitDecision = Depends(rate_limited("creation")),
):
    runtime = get_runtime()
    _get_owned_prompt(prompt_id, principal)
    prompt = runtime.store.update_prompt(
        prompt_id, title=body.title, body=body.body, tags=body.tags
    )
    if not prompt:
        raise NotFoundError("prompt not found", detail={"prompt_id": prompt_id})
    await runtime.cache.invalidate_prompt_caches(prompt_id)
    return Envelope(status="ok", data=_prompt_payload(prompt))


@router.delete("/prompts/{prompt_id}", response_model=Envelope, tags=["prompts"])
async def delete_prompt(
    prompt_id: str,
    principal: AuthContext = Depends(get_user),
    _: RateLimitDecision = Depends(rate_limited("creation")),
):
    runtime = get_runtime()
    prompt = _get_owned_prompt(prompt_id, principal)
    runtime.store.delete_prompt(prompt_id)
    await runtime.cache.invalidate_prompt_caches(prompt_id)
    await runtime.cache.invalidate_user_caches(prompt.author_id)
    logger.info("prompt_deleted", prompt_id=prompt_id, deleted_by=principal.user_id)
    return Envelope(status="ok", data={"deleted": True})


@router.post("/prompts/{prompt_id}/like", response_model=Envelope, tags=["prompts"])
async def like_prompt(
    prompt_id: str,
    principal: AuthContext = Depends(get_user),
    _: RateLimitDecision = Depends(rate_limited("social")),
):
    runtime = get_runtime()
    _get_prompt_or_404(prompt_id)
    liked, like_count = runtime.store.toggle_like(prompt_id, principal.user_id)
    await runtime.cache.invalidate_prompt_caches(prompt_id)
    return Envelope(status="ok", data={"liked": liked, "like_count": like_count})


@router.get("/prompts/{prompt_id}/comments", response_model=Envelope, tags=["prompts"])
async def list_comments(prompt_id: str, page: int = Query(1, ge=1, le=1000)):
    runtime = get_runtime()
    _get_prompt_or_404(prompt_id)
    comments = runtime.store.list_comments(prompt_id, page=page, page_size=PAGE_SIZE)
    items = [
        CommentResponse(
            id=c.id,
            prompt_id=c.prompt_id,
            author_id=c.author_id,
            body=c.body,
            created_at=c.created_at,
        )
        for c in comments
    ]
    return Envelope(status="ok", data={"items": items, "page": page})


@router.post(
    "/prompts/{prompt_id}/comments",
    response_model=Envelope,
    status_code=201,
    tags=["prompts"],
)
async def add_comment(
    prompt_id: str,
    body: CommentCreateRequest,
    principal: AuthContext = Depends(get_user),
    _: RateLimitDecision = Depends(rate_limited("comment")),
):
    runtime = get_runtime()
    _get_prompt_or_404(prompt_id)
    comment = runtime.store.add_comment(prompt_id, principal.user_id, body.body)
    await runtime.cache.invalidate("comment", prompt_id)
    return Envelope(
        status="ok",
        data=CommentResponse(
            id=comment.id,
            prompt_id=comment.prompt_id,
            author_id=comment.author_id,
            body=comment.body,
            created_at=comment.created_at,
        ),
    )


@router.get("/tags/trending", response_model=Envelope, tags=["prompts"])
async def trending_tags():
    runtime = get_runtime()
    tags = await runtime.cache.get_trending_tags()
    if tags is None:
        tags = [
            {"tag": tag, "score": score} for tag, score in runtime.store.trending_tags()
        ]
        await runtime.cache.cache_trending_tags(tags)
    return Envelope(status="ok", data={"tags": tags})


@router.get("/feed", response_model=Envelope, tags=["prompts"])
async def feed(
    page: int = Query(1, ge=1, le=1000),
    principal: AuthContext = Depends(get_user),
):
    runtime = get_runtime()
    cached = await runtime.cache.get_user_feed(principal.user_id, page)
    if cached is not None:
        return Envelope(status="ok", data={"items": cached, "page": page})
    following = runtime.store.following(principal.user_id)
    prompts = sorted(
        (p for author in following for p in runtime.store.list_prompts_by_author(author)),
        key=lambda p: p.created_at,
        reverse=True,
    )
    start = (page - 1) * PAGE_SIZE
    items = [_prompt_payload(p) for p in prompts[start : start + PAGE_SIZE]]
    await runtime.cache.cache_user_feed(principal.user_id, page, items)
    return Envelope(status="ok", data={"items": items, "page": page})


# users ---------------------------------------------------------------------


@router.get("/users/{user_id}", response_model=Envelope, tags=["users"])
async def get_profile(user_id: str):
    runtime = get_runtime()
    payload = await runtime.cache.remember(
        CacheKeys.profile(user_id),
        runtime.cache.durations.long,
        lambda: _load_profile(user_id),
        tags=(f"user:{user_id}",),
    )
    if payload is None:
        raise NotFoundError("user not found", detail={"user_id": user_id})
    return Envelope(status="ok", data=payload)


def _load_profile(user_id: str) -> Optional[Dict[str, Any]]:
    runtime = get_runtime()
    user = runtime.store.get_user(user_id)
    return _profile_payload(user) if user else None


@router.post("/users/{user_id}/follow", response_model=Envelope, tags=["users"])
async def follow_user(
    user_id: str,
    principal: AuthContext = Depends(get_user),
    _: RateLimitDecision = Depends(rate_limited("social")),
):
    runtime = get_runtime()
    if not runtime.store.get_user(user_id):
        raise NotFoundError("user not found", detail={"user_id": user_id})
    following = runtime.store.follow(principal.user_id, user_id)
    # Both sides' counts changed
    await runtime.cache.invalidate("follow", user_id)
    await runtime.cache.invalidate("follow", principal.user_id)
    return Envelope(status="ok", data={"following": following})


# admin ---------------------------------------------------------------------


@router.post("/admin/rate-limits/reset", response_model=Envelope, tags=["admin"])
async def reset_rate_limits(
    body: RateLimitResetRequest, principal: AuthContext = Depends(get_admin_user)
):
    deleted = await get_runtime().rate_limiter.reset(body.principal, body.action)
    logger.info(
        "admin_rate_limit_reset",
        admin_id=principal.user_id,
        target=body.principal,
        action=body.action,
        deleted=deleted,
    )
    return Envelope(status="ok", data={"deleted": deleted})


@router.delete("/admin/cache", response_model=Envelope, tags=["admin"])
async def clear_cache(
    pattern: Optional[str] = Query(None, min_length=1, max_length=256),
    tag: Optional[str] = Query(None, min_length=1, max_length=256),
    principal: AuthContext = Depends(get_admin_user),
):
    if not pattern and not tag:
        raise ValidationError("pattern or tag is required")
    cache = get_runtime().cache
    deleted = 0
    if tag:
        deleted += await cache.delete_by_tag(tag)
    if pattern:
        deleted += await cache.delete_by_pattern(pattern)
    logger.info(
        "admin_cache_cleared",
        admin_id=principal.user_id,
        pattern=pattern,
        tag=tag,
        deleted=deleted,
    )
    return Envelope(status="ok", data={"deleted": deleted})


__all__ = ["router", "get_user", "get_admin_user", "get_optional_user", "rate_limited"]
