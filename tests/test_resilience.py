"""Unit tests for retries, circuit breaking, rate limiting and keyed locks."""
import threading
import time
import pytest
from unittest.mock import Mock

from src.models.errors import RateLimitError, TransientProviderError, ValidationError
from src.resilience.circuit_breaker import CircuitBreaker, CircuitState
from src.resilience.locks import KeyedLock
from src.resilience.rate_limiter import RateLimiterRegistry, TokenBucket
from src.resilience.retry import backoff_delay, call_with_retry


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class TestRetry:
    """Test call_with_retry."""

    def test_backoff_doubles_and_caps(self):
        assert [backoff_delay(i, 1.0) for i in range(4)] == [1.0, 2.0, 4.0, 8.0]
        assert backoff_delay(10, 1.0, max_delay=30.0) == 30.0

    def test_retries_transient_then_succeeds(self):
        func = Mock(side_effect=[TransientProviderError("timeout"), "ok"])
        sleep = Mock()

        assert call_with_retry(func, max_attempts=3, base_delay=1.0, sleep=sleep) == "ok"
        assert func.call_count == 2
        sleep.assert_called_once_with(1.0)

    def test_gives_up_after_max_attempts(self):
        func = Mock(side_effect=TransientProviderError("timeout"))
        with pytest.raises(TransientProviderError):
            call_with_retry(func, max_attempts=3, base_delay=0.0, sleep=Mock())
        assert func.call_count == 3

    def test_non_retryable_raises_immediately(self):
        func = Mock(side_effect=ValidationError("bad"))
        with pytest.raises(ValidationError):
            call_with_retry(func, max_attempts=3, sleep=Mock())
        assert func.call_count == 1

    def test_honors_retry_after(self):
        func = Mock(side_effect=[RateLimitError("slow down", retry_after=7.0), "ok"])
        sleep = Mock()
        call_with_retry(func, max_attempts=2, base_delay=1.0, sleep=sleep)
        sleep.assert_called_once_with(7.0)


class TestCircuitBreaker:
    """Test CircuitBreaker state machine."""

    def test_opens_after_threshold(self):
        breaker = CircuitBreaker("llm-cheap", failure_threshold=2, clock=FakeClock())
        breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.allow_request() is False

    def test_half_open_probe_closes_on_success(self):
        clock = FakeClock()
        breaker = CircuitBreaker("llm-cheap", failure_threshold=1, recovery_timeout_seconds=30, clock=clock)
        breaker.record_failure()
        clock.now = 31.0

        assert breaker.allow_request() is True
        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.allow_request() is False
        breaker.record_success()
        assert breaker.state == CircuitState.CLOSED

    def test_half_open_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker("llm-cheap", failure_threshold=1, recovery_timeout_seconds=30, clock=clock)
        breaker.record_failure()
        clock.now = 31.0
        breaker.allow_request()
        breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

    def test_stats(self):
        stats = CircuitBreaker("llm-mid", failure_threshold=3).get_stats()
        assert stats["service"] == "llm-mid"
        assert stats["state"] == "closed"


class TestTokenBucket:
    """Test TokenBucket and RateLimiterRegistry."""

    def test_burst_then_empty(self):
        bucket = TokenBucket(rate=1.0, capacity=2, clock=FakeClock())
        assert bucket.try_acquire() is True
        assert bucket.try_acquire() is True
        assert bucket.try_acquire() is False

    def test_refills_over_time(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=2.0, capacity=2, clock=clock)
        bucket.try_acquire()
        bucket.try_acquire()
        clock.now = 0.5
        assert bucket.try_acquire() is True

    def test_acquire_times_out(self):
        bucket = TokenBucket(rate=0.001, capacity=1)
        bucket.try_acquire()
        start = time.monotonic()
        assert bucket.acquire(timeout=0.05) is False
        assert time.monotonic() - start < 1.0

    def test_registry_uses_source_and_provider_rates(self, config):
        registry = RateLimiterRegistry(config)
        assert registry.get("source:zendesk").rate == config.source_requests_per_second
        assert registry.get("provider:cheap").rate == config.provider_requests_per_second
        assert registry.get("provider:cheap") is registry.get("provider:cheap")


class TestKeyedLock:
    """Test KeyedLock."""

    def test_same_key_is_exclusive(self):
        locks = KeyedLock()
        inside = []
        overlap = []

        def work():
            with locks.hold("cluster:1"):
                if inside:
                    overlap.append(True)
                inside.append(True)
                time.sleep(0.01)
                inside.pop()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert overlap == []
        assert len(locks) == 0

    def test_different_keys_do_not_block(self):
        locks = KeyedLock()
        with locks.hold("a"):
            acquired = threading.Event()

            def other():
                with locks.hold("b"):
                    acquired.set()

            t = threading.Thread(target=other)
            t.start()
            assert acquired.wait(1.0)
            t.join()
