"""Tests for single-use password reset and email verification tokens."""

import asyncio

from promptvault.service.one_time_tokens import (
    OneTimeTokenStore,
    TokenPurpose,
    generate_token,
)


class TestOneTimeTokens:
    async def test_consume_returns_subject_once(self, kvs, clock):
        store = OneTimeTokenStore(kvs, clock=clock)
        token = await store.issue(TokenPurpose.PASSWORD_RESET, "u1", "tok")
        assert token == "tok"
        assert await store.consume(TokenPurpose.PASSWORD_RESET, "tok") == "u1"
        assert await store.consume(TokenPurpose.PASSWORD_RESET, "tok") is None

    async def test_purposes_are_isolated(self, kvs, clock):
        store = OneTimeTokenStore(kvs, clock=clock)
        await store.issue(TokenPurpose.EMAIL_VERIFICATION, "u1", "tok")
        assert await store.consume(TokenPurpose.PASSWORD_RESET, "tok") is None
        assert await kvs.exists("email_verify:tok")

    async def test_default_ttls(self, kvs, clock):
        store = OneTimeTokenStore(kvs, clock=clock)
        await store.issue(TokenPurpose.PASSWORD_RESET, "u1", "reset")
        await store.issue(TokenPurpose.EMAIL_VERIFICATION, "u1", "verify")
        assert await kvs.ttl("password_reset:reset") == 3600
        assert await kvs.ttl("email_verify:verify") == 86400

    async def test_expired_token_cannot_be_consumed(self, kvs, clock):
        store = OneTimeTokenStore(kvs, clock=clock)
        await store.issue(TokenPurpose.PASSWORD_RESET, "u1", "tok", ttl=30)
        clock.advance(30)
        assert await store.consume(TokenPurpose.PASSWORD_RESET, "tok") is None

    async def test_racing_consumers_only_one_wins(self, kvs, clock):
        store = OneTimeTokenStore(kvs, clock=clock)
        await store.issue(TokenPurpose.PASSWORD_RESET, "u1", "tok")
        results = await asyncio.gather(
            *(store.consume(TokenPurpose.PASSWORD_RESET, "tok") for _ in range(5))
        )
        assert results.count("u1") == 1

    async def test_empty_token_is_rejected(self, kvs, clock):
        assert await OneTimeTokenStore(kvs, clock=clock).consume(
            TokenPurpose.PASSWORD_RESET, ""
        ) is None

    def test_generated_tokens_are_unique_and_url_safe(self):
        tokens = {generate_token() for _ in range(50)}
        assert len(tokens) == 50
        assert all("/" not in t and "+" not in t for t in tokens)
