"""Tests for sliding-window presence tracking."""

from promptvault.service.presence import ACTIVE_USERS_KEY, PresenceTracker


class TestPresence:
    async def test_counts_distinct_users(self, kvs, clock):
        presence = PresenceTracker(kvs, window_seconds=900, clock=clock)
        await presence.touch("u1")
        await presence.touch("u2")
        await presence.touch("u1")
        assert await presence.active_count() == 2

    async def test_idle_users_drop_out_of_window(self, kvs, clock):
        presence = PresenceTracker(kvs, window_seconds=900, clock=clock)
        await presence.touch("u1")
        clock.advance(600)
        await presence.touch("u2")
        clock.advance(301)
        assert await presence.active_count() == 1

    async def test_touch_refreshes_membership(self, kvs, clock):
        presence = PresenceTracker(kvs, window_seconds=900, clock=clock)
        await presence.touch("u1")
        clock.advance(800)
        await presence.touch("u1")
        clock.advance(800)
        assert await presence.active_count() == 1

    async def test_scores_never_move_backwards(self, kvs, clock):
        presence = PresenceTracker(kvs, window_seconds=900, clock=clock)
        await presence.touch("u1")
        # A late writer with an older timestamp must not rewind the score
        await kvs.zadd(ACTIVE_USERS_KEY, {"u1": 0}, gt=True)
        assert await presence.active_count() == 1

    async def test_prune_returns_removed_count(self, kvs, clock):
        presence = PresenceTracker(kvs, window_seconds=60, clock=clock)
        await presence.touch("u1")
        await presence.touch("u2")
        clock.advance(120)
        assert await presence.prune() == 2
        assert await kvs.zcard(ACTIVE_USERS_KEY) == 0
