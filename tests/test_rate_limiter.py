"""
Tests for Rate Limiter

Validates the sliding window, pre-emptive throttling (delay, never drop),
and statistics tracking.
"""
import threading

import pytest

from infra.rate_limiter import RateLimiter, RateLimitStats, SlidingWindow
from tests.helpers import FakeClock


class TestSlidingWindow:
    """Test sliding window implementation"""

    def test_slot_available_when_under_limit(self):
        """No wait while fewer than max requests in window"""
        window = SlidingWindow(max_requests=2, window_seconds=60)
        window.calls.append(0.0)
        assert window.wait_time(1.0) == 0.0

    def test_wait_until_oldest_leaves_window(self):
        """Full window waits for the oldest request to expire"""
        window = SlidingWindow(max_requests=2, window_seconds=60)
        window.calls.extend([0.0, 10.0])
        assert window.wait_time(30.0) == pytest.approx(30.0)

    def test_prune_drops_expired_calls(self):
        """Requests older than the window are forgotten"""
        window = SlidingWindow(max_requests=2, window_seconds=60)
        window.calls.extend([0.0, 10.0])
        window.prune(65.0)
        assert list(window.calls) == [10.0]

    def test_utilization(self):
        """Utilization is the share of the window in use"""
        window = SlidingWindow(max_requests=4, window_seconds=60)
        window.calls.extend([0.0, 1.0])
        assert window.utilization(2.0) == 0.5


class TestRateLimitStats:
    """Test statistics tracking"""

    def test_stats_start_at_zero(self):
        """Statistics start at zero"""
        stats = RateLimitStats()
        assert stats.total_requests == 0
        assert stats.throttle_pct == 0.0

    def test_record_throttled_request(self):
        """Recording a waited request"""
        stats = RateLimitStats()
        stats.record_wait(0.0)
        stats.record_wait(2.5)
        assert stats.total_requests == 2
        assert stats.throttled_requests == 1
        assert stats.max_wait_time == 2.5
        assert stats.throttle_pct == 50.0


class TestRateLimiter:
    """Test per-source limiter"""

    @pytest.fixture
    def limiter(self, clock):
        return RateLimiter({"coinbase": (2, 60.0)}, clock=clock, sleep=clock.sleep)

    def test_requests_under_limit_do_not_wait(self, limiter, clock):
        """First max_requests calls pass immediately"""
        assert limiter.acquire("coinbase") == 0.0
        assert limiter.acquire("coinbase") == 0.0
        assert clock.sleeps == []

    def test_excess_request_is_delayed_not_dropped(self, limiter, clock):
        """Request over the limit waits for the window to slide"""
        limiter.acquire("coinbase")
        clock.advance(10)
        limiter.acquire("coinbase")
        clock.advance(5)

        waited = limiter.acquire("coinbase")

        assert waited == pytest.approx(45.0)
        assert clock.sleeps == [pytest.approx(45.0)]

    def test_sources_are_independent(self, clock):
        """One source being throttled does not affect another"""
        limiter = RateLimiter({"coinbase": (1, 60.0), "binance": (1, 60.0)}, clock=clock, sleep=clock.sleep)
        limiter.acquire("coinbase")
        assert limiter.acquire("binance") == 0.0

    def test_unknown_source_not_throttled(self, limiter):
        """Sources without a configured limit pass through"""
        for _ in range(10):
            assert limiter.acquire("jupiter") == 0.0

    def test_on_wait_hook(self, clock):
        """on_wait receives source and delay"""
        seen = []
        limiter = RateLimiter({"binance": (1, 60.0)}, clock=clock, sleep=clock.sleep,
                              on_wait=lambda s, w: seen.append((s, w)))
        limiter.acquire("binance")
        limiter.acquire("binance")
        assert seen == [("binance", pytest.approx(60.0))]

    def test_stats_and_reset(self, limiter):
        """Stats track throttled requests and can be reset"""
        for _ in range(3):
            limiter.acquire("coinbase")
        stats = limiter.get_stats("coinbase")["coinbase"]
        assert stats["total_requests"] == 3
        assert stats["throttled_requests"] == 1

        limiter.reset_stats()
        assert limiter.get_stats("coinbase")["coinbase"]["total_requests"] == 0

    def test_never_exceeds_limit_under_concurrency(self):
        """Concurrent callers never admit more than max_requests in a window"""
        clock = FakeClock()
        lock = threading.Lock()

        def sleep(seconds):
            with lock:
                clock.advance(seconds)

        limiter = RateLimiter({"coingecko": (5, 60.0)}, clock=clock, sleep=sleep)
        admitted = []

        def worker():
            limiter.acquire("coingecko")
            with lock:
                admitted.append(clock())

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert len(admitted) == 5
        assert clock() == 1000.0
        assert limiter.utilization("coingecko") == 1.0
