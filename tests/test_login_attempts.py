"""Tests for failed-login lockout counters."""

from promptvault.service.login_attempts import LoginAttemptTracker, login_attempts_key


class TestLoginAttempts:
    async def test_locks_after_max_failures(self, kvs, clock):
        tracker = LoginAttemptTracker(kvs, window_seconds=900, max_attempts=3, clock=clock)
        for expected in (1, 2, 3):
            assert await tracker.record_failure("alice") == expected
        assert await tracker.is_locked("alice")
        assert not await tracker.is_locked("bob")

    async def test_lockout_expires_with_window(self, kvs, clock):
        tracker = LoginAttemptTracker(kvs, window_seconds=900, max_attempts=1, clock=clock)
        await tracker.record_failure("alice")
        assert await kvs.ttl(login_attempts_key("alice")) == 900
        clock.advance(900)
        assert not await tracker.is_locked("alice")

    async def test_clear_resets_count(self, kvs, clock):
        tracker = LoginAttemptTracker(kvs, max_attempts=2, clock=clock)
        await tracker.record_failure("alice")
        await tracker.clear("alice")
        assert await tracker.attempts("alice") == 0

    async def test_zero_max_never_locks(self, kvs, clock):
        tracker = LoginAttemptTracker(kvs, max_attempts=0, clock=clock)
        await tracker.record_failure("alice")
        assert not await tracker.is_locked("alice")
