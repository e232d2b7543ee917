from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from promptvault.logging import get_correlation_id

MAX_TAGS = 10

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class RateLimitBody(BaseModel):
    """429 body returned when a rate-limit policy trips."""

    success: bool = False
    message: str
    retryAfter: int


def _normalize_unicode(value: str) -> str:
    return unicodedata.normalize("NFKC", value)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{3,32}$")


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class RegisterRequest(BaseModel):
    email: str
    password: str
    username: str
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _validate_register_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("username")
    @classmethod
    def _validate_username(cls, value: str) -> str:
        if not _USERNAME_PATTERN.match(value):
            raise ValueError(
                "username must be 3-32 characters of letters, digits, underscores or hyphens"
            )
        return value


class LoginRequest(BaseModel):
    # email address or username
    identifier: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)
    remember_me: bool = False


class AuthResponse(BaseModel):
    user_id: str
    username: str
    role: str = "user"
    session_id: str
    access_token: str
    token_type: str = "bearer"
    expires_at: datetime
    # Only populated in TEST_MODE; production delivers it out of band
    verification_token: Optional[str] = None


class SessionInfo(BaseModel):
    session_id: Optional[str] = None
    last_activity: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    remember_me: bool = False
    current: bool = False


class PasswordResetRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_password_reset_email(cls, value: str) -> str:
        return _validate_email(value)


class PasswordResetConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class EmailVerificationConfirm(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


def _normalize_tag_list(value: List[str]) -> List[str]:
    seen: List[str] = []
    for tag in value:
        normalized = tag.strip().lower()[:32]
        if normalized and normalized not in seen:
            seen.append(normalized)
    return seen


class PromptCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=200)
    body: str = Field(..., min_length=1, max_length=20000)
    tags: List[str] = Field(default_factory=list, max_length=MAX_TAGS)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: List[str]) -> List[str]:
        return _normalize_tag_list(value)


class PromptUpdateRequest(BaseModel):
    title: Optional[str] = Field(default=None, min_length=1, max_length=200)
    body: Optional[str] = Field(default=None, min_length=1, max_length=20000)
    tags: Optional[List[str]] = Field(default=None, max_length=MAX_TAGS)

    @field_validator("tags")
    @classmethod
    def _normalize_tags(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return _normalize_tag_list(value)


class PromptResponse(BaseModel):
    id: str
    author_id: str
    title: str
    body: str
    tags: List[str]
    like_count: int
    comment_count: int
    created_at: datetime
    updated_at: datetime


class CommentCreateRequest(BaseModel):
    body: str = Field(..., min_length=1, max_length=5000)


class CommentResponse(BaseModel):
    id: str
    prompt_id: str
    author_id: str
    body: str
    created_at: datetime


class UserProfileResponse(BaseModel):
    id: str
    username: str
    role: str
    bio: Optional[str] = None
    email_verified: bool = False
    prompt_count: int = 0
    follower_count: int = 0
    following_count: int = 0


class RateLimitResetRequest(BaseModel):
    principal: str = Field(..., min_length=1, max_length=256)
    action: Optional[str] = Field(default=None, max_length=64)


__all__ = [
    "AuthResponse",
    "CommentCreateRequest",
    "CommentResponse",
    "EmailVerificationConfirm",
    "Envelope",
    "ErrorBody",
    "LoginRequest",
    "PasswordResetConfirm",
    "PasswordResetRequest",
    "PromptCreateRequest",
    "PromptResponse",
    "PromptUpdateRequest",
    "RateLimitBody",
    "RateLimitResetRequest",
    "RegisterRequest",
    "SessionInfo",
    "UserProfileResponse",
]
