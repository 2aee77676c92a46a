"""
momentum-trader Infrastructure: Circuit Breaker

Per-source failure isolation for market data providers and the execution venue.

State machine:
    closed    -> open       after `failure_threshold` consecutive failures
    open      -> half_open  once `reset_timeout` has elapsed since the last failure
    half_open -> closed     on the first success
    half_open -> open       after `half_open_max_attempts` attempts without a success

While open (and still cooling down) calls are rejected with CircuitOpen
without touching the upstream source.
"""

import logging
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional

from core.exceptions import CircuitOpen

logger = logging.getLogger(__name__)


class CircuitStatus(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitState:
    failures: int = 0
    last_failure_at: Optional[float] = None
    status: CircuitStatus = CircuitStatus.CLOSED
    half_open_attempts: int = 0


class CircuitBreaker:
    """Thread-safe breaker guarding a single upstream source."""

    def __init__(
        self,
        source: str,
        failure_threshold: int = 3,
        reset_timeout: float = 300.0,
        half_open_max_attempts: int = 2,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Optional[Callable[[str, CircuitStatus], None]] = None,
    ):
        self.source = source
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.half_open_max_attempts = half_open_max_attempts
        self._clock = clock
        self._on_transition = on_transition
        self._state = CircuitState()
        self._lock = threading.Lock()

    @property
    def status(self) -> CircuitStatus:
        with self._lock:
            return self._state.status

    def snapshot(self) -> CircuitState:
        with self._lock:
            return CircuitState(**vars(self._state))

    def _transition(self, status: CircuitStatus) -> None:
        previous = self._state.status
        if previous == status:
            return
        self._state.status = status
        if previous == CircuitStatus.HALF_OPEN:
            self._state.half_open_attempts = 0

        if status == CircuitStatus.OPEN:
            logger.warning(
                f"Circuit OPEN for {self.source} after {self._state.failures} failure(s); "
                f"cooling down {self.reset_timeout:.0f}s"
            )
        else:
            logger.info(f"Circuit {previous.value} -> {status.value} for {self.source}")

        if self._on_transition:
            self._on_transition(self.source, status)

    def before_call(self) -> None:
        """
        Admit or reject a call.

        Raises:
            CircuitOpen: source is cooling down or half-open probes are exhausted
        """
        with self._lock:
            state = self._state
            now = self._clock()

            if state.status == CircuitStatus.OPEN:
                elapsed = now - (state.last_failure_at or now)
                if elapsed < self.reset_timeout:
                    raise CircuitOpen(self.source, retry_in=self.reset_timeout - elapsed)
                self._transition(CircuitStatus.HALF_OPEN)

            if state.status == CircuitStatus.HALF_OPEN:
                if state.half_open_attempts >= self.half_open_max_attempts:
                    raise CircuitOpen(self.source, retry_in=0.0)
                state.half_open_attempts += 1

    def record_success(self) -> None:
        with self._lock:
            self._state.failures = 0
            if self._state.status != CircuitStatus.CLOSED:
                self._transition(CircuitStatus.CLOSED)

    def record_failure(self) -> None:
        with self._lock:
            state = self._state
            state.failures += 1
            state.last_failure_at = self._clock()

            if state.status == CircuitStatus.HALF_OPEN:
                if state.half_open_attempts >= self.half_open_max_attempts:
                    self._transition(CircuitStatus.OPEN)
            elif state.status == CircuitStatus.CLOSED and state.failures >= self.failure_threshold:
                self._transition(CircuitStatus.OPEN)

    def call(self, fn: Callable, *args, **kwargs):
        self.before_call()
        try:
            result = fn(*args, **kwargs)
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result


class CircuitBreakerRegistry:
    """Lazily creates one breaker per source name with shared settings."""

    def __init__(
        self,
        failure_threshold: int = 3,
        reset_timeout: float = 300.0,
        half_open_max_attempts: int = 2,
        clock: Callable[[], float] = time.monotonic,
        on_transition: Optional[Callable[[str, CircuitStatus], None]] = None,
    ):
        self._settings = dict(
            failure_threshold=failure_threshold,
            reset_timeout=reset_timeout,
            half_open_max_attempts=half_open_max_attempts,
            clock=clock,
            on_transition=on_transition,
        )
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, source: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(source)
            if breaker is None:
                breaker = CircuitBreaker(source, **self._settings)
                self._breakers[source] = breaker
            return breaker

    def statuses(self) -> Dict[str, str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.source: b.status.value for b in breakers}
