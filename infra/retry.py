"""
momentum-trader Infrastructure: Backoff Retry

Exponential backoff with a symmetric jitter band:

    delay(attempt) = min(initial * factor ** attempt, max_delay) * (1 + jitter * (u - 0.5))

where u is uniform in [0, 1). `should_retry` separates retryable failures
(rate limits, connection resets, timeouts) from fatal ones.
"""

import functools
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Tuple, Type

import requests

from core.exceptions import CircuitOpen, RateLimited, TransientNetworkError

logger = logging.getLogger(__name__)

RETRYABLE_EXCEPTIONS: Tuple[Type[BaseException], ...] = (
    TransientNetworkError,
    RateLimited,
    ConnectionResetError,
    TimeoutError,
    requests.exceptions.Timeout,
    requests.exceptions.ConnectionError,
)


def should_retry(error: BaseException) -> bool:
    """True for rate-limit, connection-reset and timeout failures."""
    if isinstance(error, CircuitOpen):
        return False
    if isinstance(error, RETRYABLE_EXCEPTIONS):
        return True
    if isinstance(error, requests.exceptions.HTTPError) and error.response is not None:
        status = error.response.status_code
        return status == 429 or status >= 500
    return False


@dataclass
class BackoffPolicy:
    initial_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 10.0
    jitter: float = 0.1
    max_attempts: int = 3
    rng: random.Random = field(default_factory=random.Random, repr=False, compare=False)

    def base_delay(self, attempt: int) -> float:
        """Delay before jitter for a zero-based attempt number."""
        return min(self.initial_delay * (self.factor ** attempt), self.max_delay)

    def delay(self, attempt: int, error: Optional[BaseException] = None) -> float:
        base = self.base_delay(attempt)
        delay = base + base * self.jitter * (self.rng.random() - 0.5)
        if isinstance(error, RateLimited) and error.retry_after:
            delay = max(delay, error.retry_after)
        return max(0.0, delay)


def retry_call(
    fn: Callable,
    *args,
    policy: Optional[BackoffPolicy] = None,
    retry_if: Callable[[BaseException], bool] = should_retry,
    sleep: Callable[[float], None] = time.sleep,
    label: str = "",
    **kwargs,
):
    """
    Call `fn` until it succeeds, a fatal error occurs, or attempts run out.

    The last error is re-raised unchanged.
    """
    policy = policy or BackoffPolicy()
    name = label or getattr(fn, "__name__", "call")

    for attempt in range(policy.max_attempts):
        try:
            return fn(*args, **kwargs)
        except Exception as e:
            if not retry_if(e) or attempt >= policy.max_attempts - 1:
                raise
            delay = policy.delay(attempt, e)
            logger.warning(
                f"{name} failed ({type(e).__name__}: {e}), attempt {attempt + 1}/{policy.max_attempts}; "
                f"retrying in {delay:.2f}s"
            )
            sleep(delay)


def with_retry(policy: Optional[BackoffPolicy] = None, retry_if: Callable[[BaseException], bool] = should_retry):
    """Decorator form of retry_call."""

    def decorator(fn: Callable) -> Callable:
        @functools.wraps(fn)
        def wrapper(*args, **kwargs):
            return retry_call(fn, *args, policy=policy, retry_if=retry_if, label=fn.__name__, **kwargs)

        return wrapper

    return decorator
