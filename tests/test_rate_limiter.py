"""Tests for the per-key inbound rate limiter."""

from __future__ import annotations

import pytest

from specpilot.config import RateLimitConfig
from specpilot.reliability.rate_limiter import PRESETS, SlidingWindowRateLimiter


class TestSlidingWindowRateLimiter:
    def test_admits_up_to_limit(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=3, window_seconds=60, clock=clock)
        results = [limiter.check("session-1") for _ in range(3)]
        assert all(r.allowed for r in results)
        assert [r.remaining for r in results] == [2, 1, 0]

        blocked = limiter.check("session-1")
        assert not blocked.allowed
        assert blocked.remaining == 0
        assert blocked.retry_after == 60

    def test_retry_after_shrinks_and_window_resets(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=60, clock=clock)
        assert limiter.check("k").allowed
        clock.advance(45.5)
        assert limiter.check("k").retry_after == 15
        clock.advance(14.5)
        result = limiter.check("k")
        assert result.allowed
        assert result.remaining == 0

    def test_keys_are_independent(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=10, clock=clock)
        assert limiter.check("a").allowed
        assert not limiter.check("a").allowed
        assert limiter.check("b").allowed

    def test_headers(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=10, clock=clock)
        allowed = SlidingWindowRateLimiter.headers(limiter.check("k"))
        assert allowed == {"X-RateLimit-Limit": "1", "X-RateLimit-Remaining": "0"}
        blocked = SlidingWindowRateLimiter.headers(limiter.check("k"))
        assert blocked["Retry-After"] == "10"

    def test_reset_and_purge(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=1, window_seconds=10, clock=clock)
        limiter.check("a")
        limiter.check("b")
        limiter.reset("a")
        assert limiter.check("a").allowed

        clock.advance(11)
        assert limiter.purge_expired() == 2
        assert limiter.stats()["tracked_keys"] == 0

    def test_expired_windows_swept_during_checks(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=10, clock=clock)
        for i in range(limiter.PURGE_EVERY - 1):
            limiter.check(f"session-{i}")
        assert limiter.stats()["tracked_keys"] == limiter.PURGE_EVERY - 1

        clock.advance(11)
        limiter.check("fresh")
        assert limiter.stats()["tracked_keys"] == 1

    def test_stats(self, clock):
        limiter = SlidingWindowRateLimiter(max_requests=5, window_seconds=10, clock=clock)
        limiter.check("a")
        clock.advance(11)
        limiter.check("b")
        stats = limiter.stats()
        assert stats["tracked_keys"] == 2
        assert stats["active_keys"] == 1

    def test_presets(self, clock):
        limiter = SlidingWindowRateLimiter.from_preset("Chat", clock=clock)
        assert limiter.max_requests == PRESETS["chat"].max_requests
        with pytest.raises(ValueError, match="Unknown rate limit preset"):
            SlidingWindowRateLimiter.from_preset("nope")

    def test_from_config(self):
        limiter = SlidingWindowRateLimiter.from_config(
            RateLimitConfig(max_requests=2, window_seconds=5.0)
        )
        assert limiter.max_requests == 2
        assert limiter.window_seconds == 5.0

    @pytest.mark.parametrize("kwargs", [{"max_requests": 0}, {"window_seconds": 0}])
    def test_rejects_invalid_settings(self, kwargs):
        with pytest.raises(ValueError):
            SlidingWindowRateLimiter(**kwargs)
