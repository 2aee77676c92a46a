"""
Rate Limiter with Sliding Window Algorithm

Pre-emptive per-source rate limiting for market data providers and the
execution venue. When a source's window is full the caller waits until the
oldest request leaves the window; requests are delayed, never dropped.

Default public API budgets:
- coingecko: 30 requests/minute
- binance:   20 requests/minute
- coinbase:  10 requests/minute
"""

import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass
class SlidingWindow:
    """
    Request timestamps for one source within the trailing window.

    Attributes:
        max_requests: Requests allowed per window
        window_seconds: Window length
        calls: Timestamps of admitted requests (oldest first)
    """
    max_requests: int
    window_seconds: float
    calls: Deque[float] = field(default_factory=deque)

    def prune(self, now: float) -> None:
        cutoff = now - self.window_seconds
        while self.calls and self.calls[0] <= cutoff:
            self.calls.popleft()

    def wait_time(self, now: float) -> float:
        """
        Seconds until a slot frees up.

        Returns:
            Seconds to wait (0 if a slot is available now)
        """
        self.prune(now)
        if len(self.calls) < self.max_requests:
            return 0.0
        return max(0.0, self.calls[0] + self.window_seconds - now)

    def utilization(self, now: float) -> float:
        self.prune(now)
        return len(self.calls) / self.max_requests


@dataclass
class RateLimitStats:
    """Statistics for rate limiter monitoring"""
    total_requests: int = 0
    throttled_requests: int = 0
    total_wait_time: float = 0.0
    max_wait_time: float = 0.0

    def record_wait(self, wait_seconds: float):
        self.total_requests += 1
        if wait_seconds > 0:
            self.throttled_requests += 1
            self.total_wait_time += wait_seconds
            self.max_wait_time = max(self.max_wait_time, wait_seconds)

    @property
    def throttle_pct(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return self.throttled_requests / self.total_requests * 100


class RateLimiter:
    """
    Per-source sliding-window rate limiter.

    Sources without a configured limit are not throttled.
    """

    def __init__(
        self,
        limits: Optional[Dict[str, tuple]] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        on_wait: Optional[Callable[[str, float], None]] = None,
    ):
        """
        Args:
            limits: source -> (max_requests, window_seconds)
            clock: monotonic time source
            sleep: blocking sleep used while waiting for a slot
            on_wait: hook invoked with (source, seconds) whenever a call is delayed
        """
        self._clock = clock
        self._sleep = sleep
        self._on_wait = on_wait
        self._lock = threading.Lock()
        self._windows: Dict[str, SlidingWindow] = {}
        self._stats: Dict[str, RateLimitStats] = {}

        for source, (max_requests, window_seconds) in (limits or {}).items():
            self.configure(source, max_requests, window_seconds)

    def configure(self, source: str, max_requests: int, window_seconds: float = 60.0) -> None:
        with self._lock:
            self._windows[source] = SlidingWindow(max_requests=max_requests, window_seconds=window_seconds)
            self._stats.setdefault(source, RateLimitStats())
        logger.debug(f"Rate limit for {source}: {max_requests} req / {window_seconds:.0f}s")

    def acquire(self, source: str) -> float:
        """
        Block until `source` has a free slot, then record the request.

        Returns:
            Total seconds spent waiting
        """
        waited = 0.0
        while True:
            with self._lock:
                window = self._windows.get(source)
                if window is None:
                    return 0.0
                now = self._clock()
                wait = window.wait_time(now)
                if wait <= 0:
                    window.calls.append(now)
                    self._stats[source].record_wait(waited)
                    return waited

            # Sleep outside the lock so other sources keep flowing
            if wait > 1.0:
                logger.warning(f"Rate limit throttle: {source} window full, waiting {wait:.2f}s")
            else:
                logger.debug(f"Rate limit throttle: {source} waiting {wait:.3f}s")
            if self._on_wait:
                self._on_wait(source, wait)
            self._sleep(wait)
            waited += wait

    def utilization(self, source: str) -> float:
        with self._lock:
            window = self._windows.get(source)
            if window is None:
                return 0.0
            return window.utilization(self._clock())

    def get_stats(self, source: Optional[str] = None) -> Dict[str, Dict[str, float]]:
        with self._lock:
            names = [source] if source else list(self._stats)
            now = self._clock()
            result = {}
            for name in names:
                stats = self._stats.get(name)
                window = self._windows.get(name)
                if stats is None or window is None:
                    continue
                result[name] = {
                    "total_requests": stats.total_requests,
                    "throttled_requests": stats.throttled_requests,
                    "throttle_pct": stats.throttle_pct,
                    "total_wait_time": stats.total_wait_time,
                    "max_wait_time": stats.max_wait_time,
                    "utilization": window.utilization(now),
                }
            return result

    def reset_stats(self) -> None:
        with self._lock:
            for name in self._stats:
                self._stats[name] = RateLimitStats()
