"""
momentum-trader Infrastructure: Resilient Upstream Calls

Every upstream I/O call (price, candles, quote, swap, balance) flows through
ResilientCaller, which applies in order:

1. the source's circuit breaker (reject while open)
2. the source's sliding-window rate limit (wait, never drop)
3. an explicit timeout
4. exponential backoff retry for retryable failures
"""

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Callable, Optional, Set

from core.exceptions import TransientNetworkError
from infra.circuit_breaker import CircuitBreakerRegistry
from infra.rate_limiter import RateLimiter
from infra.retry import BackoffPolicy, should_retry

logger = logging.getLogger(__name__)


class ResilientCaller:
    def __init__(
        self,
        breakers: CircuitBreakerRegistry,
        limiter: RateLimiter,
        backoff: BackoffPolicy,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.breakers = breakers
        self.limiter = limiter
        self.backoff = backoff
        self._sleep = sleep
        self._lock = threading.Lock()
        self._inflight: Set[threading.Thread] = set()

    def call(
        self,
        source: str,
        fn: Callable,
        *args,
        timeout: Optional[float] = None,
        retry: bool = True,
        **kwargs,
    ):
        """
        Invoke `fn(*args, **kwargs)` against `source`.

        Raises:
            CircuitOpen: the source is cooling down
            TransientNetworkError: the call timed out on the final attempt
            Exception: whatever `fn` raised on its final attempt
        """
        breaker = self.breakers.get(source)
        attempts = self.backoff.max_attempts if retry else 1

        for attempt in range(attempts):
            breaker.before_call()
            self.limiter.acquire(source)
            try:
                result = self._invoke(source, fn, args, kwargs, timeout)
            except Exception as e:
                breaker.record_failure()
                if attempt >= attempts - 1 or not should_retry(e):
                    raise
                delay = self.backoff.delay(attempt, e)
                logger.warning(
                    f"{source} call failed ({type(e).__name__}: {e}), attempt {attempt + 1}/{attempts}; "
                    f"retrying in {delay:.2f}s"
                )
                self._sleep(delay)
                continue
            breaker.record_success()
            return result

    def _invoke(self, source: str, fn: Callable, args, kwargs, timeout: Optional[float]):
        if timeout is None:
            return fn(*args, **kwargs)

        # One daemon thread per timed call; an abandoned call never blocks other
        # sources or interpreter exit
        future: Future = Future()

        def run():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as e:
                future.set_exception(e)
            finally:
                with self._lock:
                    self._inflight.discard(worker)

        worker = threading.Thread(target=run, name=f"upstream-{source}", daemon=True)
        with self._lock:
            self._inflight.add(worker)
        worker.start()
        try:
            return future.result(timeout=timeout)
        except FutureTimeout:
            raise TransientNetworkError(f"{source} call timed out after {timeout:.1f}s")

    def inflight(self) -> int:
        """Timed calls still running, including ones already abandoned after a timeout."""
        with self._lock:
            return len(self._inflight)

    def close(self) -> None:
        abandoned = self.inflight()
        if abandoned:
            logger.warning(f"{abandoned} upstream call(s) still in flight at close; abandoning them")
