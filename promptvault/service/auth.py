from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from promptvault.config import Settings
from promptvault.logging import get_logger
from promptvault.service.errors import (
    AuthenticationError,
    RateLimitedError,
    ValidationError,
)
from promptvault.service.login_attempts import LoginAttemptTracker
from promptvault.service.one_time_tokens import (
    OneTimeTokenStore,
    TokenPurpose,
    generate_token,
)
from promptvault.service.revocation import TokenRevocationList
from promptvault.service.sessions import SessionRecord, SessionStore
from promptvault.storage.models import User

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8


class AuthStore(Protocol):
    def create_user(self, email: str, username: str, *, role: str = "user") -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_login(self, identifier: str) -> Optional[User]: ...

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None: ...

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]: ...

    def mark_email_verified(self, user_id: str) -> Optional[User]: ...


@dataclass
class AuthContext:
    user_id: str
    role: str
    username: str
    session_id: Optional[str] = None
    jti: Optional[str] = None
    token_exp: Optional[int] = None


class AuthService:
    """Password login, access tokens and the session/revocation checks around them.

    Access tokens are HMAC-signed JWTs bound to a server-side session via the
    ``sid`` claim. A token is accepted only while its ``jti`` is not revoked
    and its session still resolves, so an unreachable KVS fails closed to
    "not authenticated".
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        sessions: SessionStore,
        revocations: TokenRevocationList,
        one_time_tokens: OneTimeTokenStore,
        login_attempts: LoginAttemptTracker,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self.sessions = sessions
        self.revocations = revocations
        self.one_time_tokens = one_time_tokens
        self.login_attempts = login_attempts
        self._clock = clock or time.time
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger
        # Allowance for small clock skew across nodes
        self._clock_skew_leeway = 120

    # accounts --------------------------------------------------------------

    async def register(
        self,
        email: str,
        password: str,
        username: str,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[User, str, dict[str, Any], Optional[str]]:
        self._validate_password(password)
        user = self.store.create_user(email=email, username=username)
        self.save_password(user.id, password)
        session_id, tokens = await self._start_session(
            user, remember_me=remember_me, ip_address=ip_address, user_agent=user_agent
        )
        verification_token = await self.request_email_verification(user)
        return user, session_id, tokens, verification_token

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        remember_me: bool = False,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> tuple[User, str, dict[str, Any]]:
        attempt_key = identifier.strip().lower()
        if await self.login_attempts.is_locked(attempt_key):
            raise RateLimitedError(
                "Too many failed login attempts, please try again later",
                retry_after=self.login_attempts.window_seconds,
                limit=self.login_attempts.max_attempts,
            )
        user = self.store.get_user_by_login(identifier.strip())
        if not user or not self.verify_password(user.id, password):
            attempts = await self.login_attempts.record_failure(attempt_key)
            self.logger.info("login_failed", attempts=attempts)
            raise AuthenticationError("invalid credentials")
        await self.login_attempts.clear(attempt_key)
        session_id, tokens = await self._start_session(
            user, remember_me=remember_me, ip_address=ip_address, user_agent=user_agent
        )
        self.logger.info("login_succeeded", user_id=user.id, remember_me=remember_me)
        return user, session_id, tokens

    async def _start_session(
        self,
        user: User,
        *,
        remember_me: bool,
        ip_address: Optional[str],
        user_agent: Optional[str],
    ) -> tuple[str, dict[str, Any]]:
        session_id = secrets.token_urlsafe(32)
        record = SessionRecord(
            user_id=user.id,
            username=user.username,
            email=user.email,
            role=user.role,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        await self.sessions.create(session_id, record, remember_me)
        return session_id, self._issue_tokens(user, session_id)

    async def logout(self, ctx: AuthContext) -> None:
        """Revoke the presented token and drop its session."""
        if ctx.jti and ctx.token_exp:
            await self.revocations.revoke(
                ctx.jti, ctx.user_id, ctx.token_exp, reason="logout"
            )
        if ctx.session_id:
            await self.sessions.delete(ctx.session_id)
        self.logger.info("logout", user_id=ctx.user_id)

    async def logout_all(self, ctx: AuthContext) -> int:
        """Drop every session of the user; tokens bound to them stop resolving."""
        if ctx.jti and ctx.token_exp:
            await self.revocations.revoke(
                ctx.jti, ctx.user_id, ctx.token_exp, reason="logout_all"
            )
        return await self.sessions.delete_all_for_subject(ctx.user_id)

    async def authenticate(
        self,
        authorization: Optional[str],
        session_id: Optional[str],
        *,
        required_role: Optional[str] = None,
    ) -> Optional[AuthContext]:
        token = self._extract_bearer(authorization)
        ctx: Optional[AuthContext] = None
        if token:
            ctx = await self._authenticate_access_token(token)
        elif session_id:
            record = await self.sessions.get(session_id)
            if record:
                ctx = AuthContext(
                    user_id=record.user_id,
                    role=record.role,
                    username=record.username,
                    session_id=session_id,
                )
        if ctx and required_role and not self._role_allows(ctx.role, required_role):
            return None
        return ctx

    async def _authenticate_access_token(self, token: str) -> Optional[AuthContext]:
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            return None
        jti = payload.get("jti")
        if not jti or await self.revocations.is_revoked(jti):
            self.logger.info("access_token_rejected", reason="revoked_or_missing_jti")
            return None
        session_id = payload.get("sid")
        record = await self.sessions.get(session_id) if session_id else None
        if not record or record.user_id != payload.get("sub"):
            return None
        return AuthContext(
            user_id=record.user_id,
            role=record.role,
            username=record.username,
            session_id=session_id,
            jti=jti,
            token_exp=int(payload["exp"]),
        )

    # one-time token flows --------------------------------------------------

    async def request_password_reset(self, email: str) -> Optional[str]:
        """Issue a reset token; unknown addresses are not revealed to callers."""
        user = self.store.get_user_by_email(email)
        if not user:
            self.logger.info(
                "password_reset_unknown_email",
                email_hash=hashlib.sha256(email.strip().lower().encode()).hexdigest(),
            )
            return None
        token = await self.one_time_tokens.issue(
            TokenPurpose.PASSWORD_RESET, user.id, generate_token()
        )
        self.logger.info("password_reset_requested", user_id=user.id, issued=bool(token))
        return token

    async def complete_password_reset(self, token: str, new_password: str) -> bool:
        self._validate_password(new_password)
        user_id = await self.one_time_tokens.consume(TokenPurpose.PASSWORD_RESET, token)
        if not user_id:
            self.logger.warning("password_reset_invalid_token", token_prefix=token[:8])
            return False
        user = self.store.get_user(user_id)
        if not user:
            self.logger.warning("password_reset_user_missing", user_id=user_id)
            return False
        self.save_password(user.id, new_password)
        await self.sessions.delete_all_for_subject(user.id)
        self.logger.info("password_reset_completed", user_id=user.id)
        return True

    async def request_email_verification(self, user: User) -> Optional[str]:
        if user.email_verified:
            return None
        token = await self.one_time_tokens.issue(
            TokenPurpose.EMAIL_VERIFICATION, user.id, generate_token()
        )
        self.logger.info("email_verification_requested", user_id=user.id, issued=bool(token))
        return token

    async def complete_email_verification(self, token: str) -> bool:
        user_id = await self.one_time_tokens.consume(
            TokenPurpose.EMAIL_VERIFICATION, token
        )
        if not user_id:
            self.logger.warning("email_verification_invalid_token", token_prefix=token[:8])
            return False
        if not self.store.mark_email_verified(user_id):
            self.logger.warning("email_verification_missing_user", user_id=user_id)
            return False
        self.logger.info("email_verified", user_id=user_id)
        return True

    # passwords -------------------------------------------------------------

    def _validate_password(self, password: str) -> None:
        if len(password) < MIN_PASSWORD_LENGTH:
            raise ValidationError(
                f"password must be at least {MIN_PASSWORD_LENGTH} characters",
                detail={"field": "password"},
            )

    def _hash_password(self, password: str) -> Tuple[str, str]:
        algo = "argon2id"
        digest = self._pwd_hasher.hash(password)
        return digest, algo

    def verify_password(self, user_id: str, password: str) -> bool:
        record = self.store.get_password_record(user_id)
        if not record:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        stored_hash, algo = record
        if algo != "argon2id":
            self.logger.warning("password_algo_mismatch", user_id=user_id, algo=algo)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def save_password(self, user_id: str, password: str) -> None:
        pwd_hash, algo = self._hash_password(password)
        self.store.save_password(user_id, pwd_hash, algo)

    # tokens ----------------------------------------------------------------

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 to prevent algorithm confusion
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm")
            return None

        if not hmac.compare_digest(self._sign(f"{header_b64}.{payload_b64}"), sig_b64):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        else:
            valid_aud = aud == self.settings.jwt_audience
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._clock() - self._clock_skew_leeway:
            return None
        return payload

    def _issue_tokens(self, user: User, session_id: str) -> dict[str, Any]:
        now = int(self._clock())
        access_exp = now + self.settings.access_token_ttl_minutes * 60
        access_payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": user.id,
            "sid": session_id,
            "role": user.role,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": now,
            "exp": access_exp,
        }
        return {
            "access_token": self._encode_jwt(access_payload),
            "token_type": "bearer",
            "expires_at": datetime.fromtimestamp(access_exp, tz=timezone.utc).isoformat(),
        }

    def _role_allows(self, role: str, required: str) -> bool:
        if role == required:
            return True
        return role == "admin" and required in {"admin", "user"}

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        if not header.lower().startswith("bearer "):
            return None
        return header.split(" ", 1)[1].strip() or None


__all__ = ["AuthContext", "AuthService", "AuthStore"]
