"""Shared exception types for core trading logic."""

from typing import Optional


class CriticalDataUnavailable(RuntimeError):
    """Raised when required market or account data cannot be fetched safely."""

    def __init__(self, source: str, original: Optional[Exception] = None):
        super().__init__(source)
        self.source = source
        self.original = original


class TradingError(Exception):
    """Base class for recoverable trading-engine failures."""


class TransientNetworkError(TradingError):
    """Upstream call failed in a way that is worth retrying (timeout, reset, 5xx)."""


class RateLimited(TradingError):
    """Upstream rejected the call with a rate-limit response (HTTP 429)."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class CircuitOpen(TradingError):
    """Call rejected locally because the source's circuit breaker is open."""

    def __init__(self, source: str, retry_in: float = 0.0):
        super().__init__(f"circuit open for {source} (retry in {retry_in:.1f}s)")
        self.source = source
        self.retry_in = retry_in


class ExecutionFailure(TradingError):
    """Entry or exit execution did not complete; the attempt is aborted."""

    def __init__(self, symbol: str, reason: str):
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason


class StaleDataUsed(TradingError):
    """Only a cached value older than its TTL was available."""

    def __init__(self, key: str, age_seconds: float, value: Optional[float] = None):
        super().__init__(f"stale data for {key} ({age_seconds:.1f}s old)")
        self.key = key
        self.age_seconds = age_seconds
        self.value = value


class ShutdownInProgress(TradingError):
    """New entries are rejected because the engine is shutting down."""
