# src/resilience/rate_limiter.py
"""
Token-bucket rate limiting, one bucket per external dependency
(``source:<system>`` and ``provider:<name>``).

Callers block on a condition variable while the bucket is empty, up to a
timeout; on timeout ``acquire`` returns False and the caller requeues its job.
"""

import logging
import threading
import time
from typing import Callable, Dict

from src.config.settings import Settings

logger = logging.getLogger(__name__)


class TokenBucket:
    """Thread-safe token bucket refilled continuously at ``rate`` tokens/second."""

    def __init__(self, rate: float, capacity: int, clock: Callable[[], float] = time.monotonic):
        if rate <= 0 or capacity <= 0:
            raise ValueError("rate and capacity must be positive")
        self.rate = rate
        self.capacity = capacity
        self._clock = clock
        self._tokens = float(capacity)
        self._last_refill = clock()
        self._cond = threading.Condition()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = now - self._last_refill
        if elapsed > 0:
            self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
            self._last_refill = now

    def try_acquire(self, tokens: float = 1.0) -> bool:
        with self._cond:
            self._refill()
            if self._tokens >= tokens:
                self._tokens -= tokens
                return True
            return False

    def acquire(self, tokens: float = 1.0, timeout: float = 10.0) -> bool:
        """
        Take ``tokens`` from the bucket, suspending until they are available.

        Returns:
            True if acquired, False if ``timeout`` elapsed first
        """
        deadline = self._clock() + timeout
        with self._cond:
            while True:
                self._refill()
                if self._tokens >= tokens:
                    self._tokens -= tokens
                    return True
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                wait_for = min(remaining, (tokens - self._tokens) / self.rate)
                self._cond.wait(timeout=wait_for)

    @property
    def available(self) -> float:
        with self._cond:
            self._refill()
            return self._tokens


class RateLimiterRegistry:
    """Lazily creates one bucket per dependency key."""

    def __init__(self, config: Settings):
        self.config = config
        self._buckets: Dict[str, TokenBucket] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> TokenBucket:
        with self._lock:
            if key not in self._buckets:
                if key.startswith("source:"):
                    rate = self.config.source_requests_per_second
                else:
                    rate = self.config.provider_requests_per_second
                self._buckets[key] = TokenBucket(rate=rate, capacity=self.config.rate_limit_burst)
                logger.info(f"Created rate limiter '{key}' ({rate}/s, burst {self.config.rate_limit_burst})")
            return self._buckets[key]

    def acquire(self, key: str, timeout: float = None) -> bool:
        if timeout is None:
            timeout = self.config.rate_limit_wait_seconds
        return self.get(key).acquire(timeout=timeout)
