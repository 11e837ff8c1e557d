"""
Tests for the fixed window rate limiter and failed attempt tracker
"""

import pytest

from attempt_tracker import FailedAttemptTracker
from rate_limit import FixedWindowRateLimiter


class TestFixedWindowRateLimiter:

    @pytest.fixture
    def limiter(self, fake_clock):
        return FixedWindowRateLimiter(limit=10, window_seconds=60, clock=fake_clock)

    def test_eleventh_request_refused(self, limiter):
        results = [limiter.check("10.0.0.1") for _ in range(11)]
        assert all(r.allowed for r in results[:10])
        assert results[10].allowed is False
        assert results[10].remaining == 0
        assert results[10].retry_after == pytest.approx(60)

    def test_next_window_admits(self, limiter, fake_clock):
        for _ in range(11):
            limiter.check("10.0.0.1")
        fake_clock.advance(60)
        assert limiter.allow("10.0.0.1") is True

    def test_keys_are_independent(self, limiter):
        for _ in range(10):
            limiter.check("10.0.0.1")
        assert limiter.allow("10.0.0.2") is True

    def test_refused_requests_do_not_extend_window(self, limiter, fake_clock):
        for _ in range(10):
            limiter.check("10.0.0.1")
        fake_clock.advance(30)
        refused = limiter.check("10.0.0.1")
        assert refused.retry_after == pytest.approx(30)
        assert limiter.get_stats("10.0.0.1")["current"] == 10

    def test_remaining_counts_down(self, limiter):
        assert limiter.check("k").remaining == 9
        assert limiter.check("k").remaining == 8

    def test_cleanup_and_reset(self, limiter, fake_clock):
        limiter.check("a")
        fake_clock.advance(30)
        limiter.check("b")
        fake_clock.advance(31)
        assert limiter.cleanup_expired() == 1
        assert len(limiter) == 1
        limiter.reset()
        assert len(limiter) == 0


class TestFailedAttemptTracker:

    @pytest.fixture
    def tracker(self, fake_clock, security_logger):
        return FailedAttemptTracker(window_seconds=300, threshold=5,
                                    security_logger=security_logger, clock=fake_clock)

    def test_counts_per_ip(self, tracker):
        tracker.record_failure("1.1.1.1")
        entry = tracker.record_failure("1.1.1.1")
        assert entry.count == 2
        assert tracker.get("2.2.2.2") is None

    def test_threshold_callback_fires_once(self, tracker):
        fired = []
        tracker.add_threshold_callback(fired.append)
        for _ in range(8):
            tracker.record_failure("1.1.1.1")
        assert len(fired) == 1
        assert fired[0].count == 5

    def test_window_restarts_count(self, tracker, fake_clock):
        for _ in range(4):
            tracker.record_failure("1.1.1.1")
        fake_clock.advance(300)
        assert tracker.record_failure("1.1.1.1").count == 1

    def test_failing_callback_is_contained(self, tracker):
        def explode(entry):
            raise RuntimeError("boom")
        tracker.add_threshold_callback(explode)
        for _ in range(5):
            tracker.record_failure("1.1.1.1")
        assert tracker.get("1.1.1.1").count == 5

    def test_threshold_logs_security_event(self, tracker, security_logger, caplog):
        with caplog.at_level("WARNING", logger="security"):
            for _ in range(5):
                tracker.record_failure("1.1.1.1")
        assert "FAILED_ACCESS_PATTERN" in caplog.text

    def test_purge_expired(self, tracker, fake_clock):
        tracker.record_failure("1.1.1.1")
        fake_clock.advance(100)
        tracker.record_failure("2.2.2.2")
        fake_clock.advance(200)
        assert tracker.purge_expired() == 1
        assert len(tracker) == 1
