# src/resilience/circuit_breaker.py
"""
Circuit breaker for model providers.

Three-state machine: CLOSED -> OPEN -> HALF_OPEN.
    CLOSED -> OPEN:      failure_count >= failure_threshold
    OPEN -> HALF_OPEN:   recovery timeout elapsed
    HALF_OPEN -> CLOSED: half_open_max_calls consecutive successes
    HALF_OPEN -> OPEN:   any failure

Breakers are owned by whoever wraps the provider (the LLM router keeps one per
tier); there is no process-wide registry.
"""

import logging
import threading
import time
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class CircuitState(Enum):
    CLOSED = "closed"        # requests flow through
    OPEN = "open"            # requests are rejected
    HALF_OPEN = "half_open"  # limited probe requests


class CircuitBreaker:
    """Thread-safe in-memory circuit breaker."""

    def __init__(
        self,
        service_name: str,
        failure_threshold: int = 5,
        recovery_timeout_seconds: float = 30,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.service_name = service_name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout_seconds
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._last_failure_time = 0.0
        self._lock = threading.Lock()

    def allow_request(self) -> bool:
        with self._lock:
            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._clock() - self._last_failure_time >= self.recovery_timeout:
                    self._transition_to(CircuitState.HALF_OPEN)
                    self._half_open_calls = 1
                    self._success_count = 0
                    return True
                return False

            if self._half_open_calls < self.half_open_max_calls:
                self._half_open_calls += 1
                return True
            return False

    def record_success(self):
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self._success_count += 1
                if self._success_count >= self.half_open_max_calls:
                    self._transition_to(CircuitState.CLOSED)
                    self._failure_count = 0
            elif self._state == CircuitState.CLOSED:
                self._failure_count = 0

    def record_failure(self):
        with self._lock:
            self._failure_count += 1
            self._last_failure_time = self._clock()

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self._failure_count >= self.failure_threshold:
                self._transition_to(CircuitState.OPEN)

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    def reset(self):
        with self._lock:
            self._transition_to(CircuitState.CLOSED)
            self._failure_count = 0
            self._success_count = 0
            self._half_open_calls = 0

    def get_stats(self) -> dict:
        with self._lock:
            return {
                "service": self.service_name,
                "state": self._state.value,
                "failure_count": self._failure_count,
                "failure_threshold": self.failure_threshold,
                "recovery_timeout_seconds": self.recovery_timeout,
            }

    def _transition_to(self, new_state: CircuitState):
        """Must be called under lock."""
        old_state = self._state
        self._state = new_state
        if old_state != new_state:
            logger.info(f"Circuit breaker '{self.service_name}': {old_state.value} -> {new_state.value}")
