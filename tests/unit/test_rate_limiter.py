"""Tests for the sliding-window rate limiter."""

import pytest

from reports.lib.errors import RateLimitExceeded
from reports.lib.rate_limiter import RateLimiter


class TestCheckLimit:
    """Tests for RateLimiter.check_limit."""

    def test_admits_up_to_max(self, clock):
        limiter = RateLimiter(max_requests=3, window_seconds=10, clock=clock.monotonic)

        for _ in range(3):
            limiter.check_limit("seller")

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check_limit("seller")

        assert exc_info.value.identity == "seller"
        assert 0 < exc_info.value.retry_after <= 10

    def test_retry_after_counts_down_from_oldest_request(self, clock):
        limiter = RateLimiter(max_requests=2, window_seconds=10, clock=clock.monotonic)
        limiter.check_limit("seller")
        clock.advance(4)
        limiter.check_limit("seller")
        clock.advance(1)

        with pytest.raises(RateLimitExceeded) as exc_info:
            limiter.check_limit("seller")

        # Oldest request at t=0 leaves the window at t=10
        assert exc_info.value.retry_after == pytest.approx(5.0)

    def test_window_slides(self, clock):
        """Requests older than the window stop counting."""
        limiter = RateLimiter(max_requests=1, window_seconds=10, clock=clock.monotonic)
        limiter.check_limit("seller")

        clock.advance(10.5)

        limiter.check_limit("seller")

    def test_rejected_request_is_not_recorded(self, clock):
        limiter = RateLimiter(max_requests=1, window_seconds=10, clock=clock.monotonic)
        limiter.check_limit("seller")
        with pytest.raises(RateLimitExceeded):
            limiter.check_limit("seller")

        assert limiter.get_stats("seller")["requests"] == 1

    def test_identities_are_independent(self, clock):
        limiter = RateLimiter(max_requests=1, window_seconds=10, clock=clock.monotonic)

        limiter.check_limit("seller-a")
        limiter.check_limit("seller-b")

        assert not limiter.try_acquire("seller-a")


class TestStatsAndCleanup:
    """Tests for get_stats, reset and cleanup."""

    def test_get_stats(self, clock):
        limiter = RateLimiter(max_requests=5, window_seconds=60, clock=clock.monotonic)
        limiter.check_limit("seller")
        clock.advance(20)
        limiter.check_limit("seller")

        stats = limiter.get_stats("seller")

        assert stats["requests"] == 2
        assert stats["remaining"] == 3
        assert stats["reset_in"] == pytest.approx(40.0)

    def test_stats_for_unknown_identity(self, clock):
        limiter = RateLimiter(max_requests=5, window_seconds=60, clock=clock.monotonic)

        assert limiter.get_stats("nobody") == {"requests": 0, "remaining": 5, "reset_in": 0.0}

    def test_reset_one_identity(self, clock):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock.monotonic)
        limiter.check_limit("seller-a")
        limiter.check_limit("seller-b")

        limiter.reset("seller-a")

        assert limiter.try_acquire("seller-a")
        assert not limiter.try_acquire("seller-b")

    def test_reset_all(self, clock):
        limiter = RateLimiter(max_requests=1, window_seconds=60, clock=clock.monotonic)
        limiter.check_limit("seller-a")
        limiter.check_limit("seller-b")

        limiter.reset()

        assert limiter.try_acquire("seller-a")
        assert limiter.try_acquire("seller-b")

    def test_cleanup_drops_idle_identities(self, clock):
        limiter = RateLimiter(max_requests=5, window_seconds=10, clock=clock.monotonic)
        limiter.check_limit("old")
        clock.advance(8)
        limiter.check_limit("recent")
        clock.advance(5)

        assert limiter.cleanup() == 1
        assert limiter.get_stats("recent")["requests"] == 1


class TestValidation:
    def test_rejects_zero_requests(self):
        with pytest.raises(ValueError):
            RateLimiter(max_requests=0, window_seconds=10)

    def test_rejects_empty_window(self):
        with pytest.raises(ValueError):
            RateLimiter(max_requests=1, window_seconds=0)
