# src/resilience/retry.py
"""
Exponential backoff for calls to external dependencies.

Only retryable errors (TransientProviderError and its RateLimitError subclass)
are retried; everything else propagates on the first raise.
"""

from typing import Callable, Optional, TypeVar
import logging
import time

from src.models.errors import RateLimitError, TransientProviderError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float = 60.0) -> float:
    """Delay before retry number ``attempt`` (0-based): base * 2^attempt, capped."""
    return min(base_delay * (2 ** attempt), max_delay)


def call_with_retry(
    func: Callable[[], T],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    description: str = "external call",
    sleep: Callable[[float], None] = time.sleep,
    on_failure: Optional[Callable[[Exception], None]] = None,
) -> T:
    """
    Call ``func`` and retry transient failures with exponential backoff.

    Args:
        func: Zero-argument callable performing the external call
        max_attempts: Total attempts including the first one
        base_delay: Delay in seconds before the first retry
        description: Label used in log messages
        sleep: Sleep function (injectable for tests)
        on_failure: Optional hook invoked with every transient failure

    Returns:
        Whatever ``func`` returns

    Raises:
        TransientProviderError: When every attempt failed transiently (the last error)
    """
    for attempt in range(max_attempts):
        try:
            return func()
        except TransientProviderError as e:
            if on_failure is not None:
                on_failure(e)
            if attempt == max_attempts - 1:
                raise

            delay = backoff_delay(attempt, base_delay)
            if isinstance(e, RateLimitError) and e.retry_after:
                delay = max(delay, e.retry_after)
            logger.warning(
                f"Transient failure on {description}: {e}. Retrying in {delay}s... "
                f"(attempt {attempt + 1}/{max_attempts})"
            )
            sleep(delay)
    raise ValueError("max_attempts must be at least 1")
