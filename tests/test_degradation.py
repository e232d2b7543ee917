"""Every ephemeral-state feature turns off, rather than failing, when the KVS is down."""

from unittest.mock import MagicMock

from promptvault.service.cache import CacheService
from promptvault.service.login_attempts import LoginAttemptTracker
from promptvault.service.one_time_tokens import OneTimeTokenStore, TokenPurpose
from promptvault.service.presence import PresenceTracker
from promptvault.service.rate_limit import RateLimiter, RateLimitPolicy
from promptvault.service.revocation import TokenRevocationList
from promptvault.service.sessions import SessionRecord, SessionStore


def _quiet(service):
    service.logger = MagicMock()
    return service


class TestRateLimiterFailsOpen:
    async def test_check_allows_with_full_quota(self, down_kvs):
        limiter = _quiet(RateLimiter(down_kvs))
        policy = RateLimitPolicy(name="auth", window_ms=60_000, max_requests=5)
        decision = await limiter.check(policy, "auth:1.2.3.4")
        assert decision.allowed
        assert decision.degraded
        assert decision.remaining == 4
        limiter.logger.warning.assert_called_once()
        assert limiter.logger.warning.call_args[0][0] == "rate_limit_check_failed"
        assert limiter.logger.warning.call_args[1]["kvs_unavailable"] is True

    async def test_degraded_decision_is_not_recorded(self, down_kvs):
        limiter = _quiet(RateLimiter(down_kvs))
        policy = RateLimitPolicy(name="auth", window_ms=60_000, max_requests=5)
        decision = await limiter.check(policy, "k")
        down_kvs.calls.clear()
        assert await limiter.record(decision) is None
        assert down_kvs.calls == []

    async def test_action_helpers(self, down_kvs):
        limiter = _quiet(RateLimiter(down_kvs))
        assert not await limiter.is_rate_limited("u1", "social", 1, 60_000)
        await limiter.increment_counter("u1", "social", 60_000)
        assert await limiter.remaining_requests("u1", "social", 3, 60_000) == 3
        assert await limiter.reset("u1") == 0


class TestSessionsDegrade:
    async def test_reads_miss_and_writes_noop(self, down_kvs):
        store = _quiet(SessionStore(down_kvs))
        record = SessionRecord(user_id="u1", username="alice", email="a@example.com")
        await store.create("s1", record)
        assert await store.get("s1") is None
        assert await store.update("s1", {"role": "admin"}) is None
        await store.delete("s1")
        assert await store.delete_all_for_subject("u1") == 0
        assert await store.list_for_subject("u1") == []
        assert not await store.health_check()


class TestRevocationDegrades:
    async def test_is_revoked_fails_open(self, down_kvs):
        revocations = _quiet(TokenRevocationList(down_kvs))
        assert not await revocations.revoke("j", "u1", 4_000_000_000)
        assert not await revocations.is_revoked("j")
        assert await revocations.revoked_for_subject("u1") == set()
        events = [c[0][0] for c in revocations.logger.warning.call_args_list]
        assert "token_revocation_check_failed" in events


class TestPresenceDegrades:
    async def test_touch_noop_and_zero_count(self, down_kvs):
        presence = _quiet(PresenceTracker(down_kvs))
        await presence.touch("u1")
        assert await presence.active_count() == 0
        assert await presence.prune() == 0


class TestOneTimeTokensDegrade:
    async def test_issue_signals_failure(self, down_kvs):
        store = _quiet(OneTimeTokenStore(down_kvs))
        assert await store.issue(TokenPurpose.PASSWORD_RESET, "u1", "tok") is None
        assert await store.consume(TokenPurpose.PASSWORD_RESET, "tok") is None


class TestCacheDegrades:
    async def test_miss_and_noop(self, down_kvs):
        cache = _quiet(CacheService(down_kvs))
        assert await cache.get("k") is None
        assert not await cache.set("k", 1, 60, tags=["t"])
        assert await cache.delete("k") == 0
        assert await cache.delete_by_pattern("*") == 0
        assert await cache.invalidate("prompt", "p1") == 0
        assert await cache.remember("k", 60, lambda: {"fresh": True}) == {"fresh": True}


class TestLoginAttemptsDegrade:
    async def test_never_locks(self, down_kvs):
        tracker = _quiet(LoginAttemptTracker(down_kvs, max_attempts=1))
        assert await tracker.record_failure("alice") == 0
        assert not await tracker.is_locked("alice")
        await tracker.clear("alice")
