"""
Tests for exponential backoff and retry classification
"""
import random
from unittest.mock import Mock

import pytest
import requests

from core.exceptions import CircuitOpen, RateLimited, TransientNetworkError
from infra.retry import BackoffPolicy, retry_call, should_retry, with_retry


def _http_error(status):
    response = Mock()
    response.status_code = status
    return requests.exceptions.HTTPError(response=response)


class TestShouldRetry:
    @pytest.mark.parametrize(
        "error",
        [
            TransientNetworkError("reset"),
            RateLimited("429"),
            ConnectionResetError(),
            TimeoutError(),
            requests.exceptions.Timeout(),
            requests.exceptions.ConnectionError(),
        ],
    )
    def test_retryable_errors(self, error):
        """Rate limits, resets and timeouts are retried"""
        assert should_retry(error)

    def test_http_status_classification(self):
        """429 and 5xx retry, other 4xx do not"""
        assert should_retry(_http_error(429))
        assert should_retry(_http_error(503))
        assert not should_retry(_http_error(400))
        assert not should_retry(_http_error(404))

    def test_fatal_errors_not_retried(self):
        """Programming errors and open circuits are not retried"""
        assert not should_retry(ValueError("bad"))
        assert not should_retry(CircuitOpen("binance", 10))


class TestBackoffPolicy:
    def test_base_delay_grows_and_caps(self):
        """initial 1s, factor 2, max 10s"""
        policy = BackoffPolicy(initial_delay=1.0, factor=2.0, max_delay=10.0)
        assert [policy.base_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]

    def test_jitter_band_is_symmetric(self):
        """Delay stays within base * (1 +/- jitter/2)"""
        policy = BackoffPolicy(jitter=0.1, rng=random.Random(7))
        for attempt in range(4):
            base = policy.base_delay(attempt)
            for _ in range(50):
                delay = policy.delay(attempt)
                assert base * 0.95 <= delay <= base * 1.05

    def test_retry_after_is_respected(self):
        """RateLimited retry_after sets a floor on the delay"""
        policy = BackoffPolicy(jitter=0.0)
        assert policy.delay(0, RateLimited("429", retry_after=7.0)) == 7.0


class TestRetryCall:
    def test_retries_until_success(self):
        """Transient failures are retried with backoff"""
        fn = Mock(side_effect=[TransientNetworkError("a"), TransientNetworkError("b"), "ok"])
        sleeps = []
        result = retry_call(fn, policy=BackoffPolicy(jitter=0.0), sleep=sleeps.append)
        assert result == "ok"
        assert sleeps == [1.0, 2.0]

    def test_gives_up_after_max_attempts(self):
        """Last error propagates once attempts are exhausted"""
        fn = Mock(side_effect=TransientNetworkError("down"))
        with pytest.raises(TransientNetworkError):
            retry_call(fn, policy=BackoffPolicy(max_attempts=3, jitter=0.0), sleep=lambda s: None)
        assert fn.call_count == 3

    def test_fatal_error_not_retried(self):
        """Non-retryable errors propagate on the first attempt"""
        fn = Mock(side_effect=ValueError("bad symbol"))
        with pytest.raises(ValueError):
            retry_call(fn, sleep=lambda s: None)
        assert fn.call_count == 1

    def test_decorator(self):
        """with_retry wraps a function"""
        calls = {"n": 0}

        @with_retry(BackoffPolicy(initial_delay=0.001, max_delay=0.001, jitter=0.0))
        def flaky():
            calls["n"] += 1
            if calls["n"] < 2:
                raise ConnectionResetError()
            return "done"

        assert flaky() == "done"
        assert calls["n"] == 2
