# src/models/errors.py
"""
Error taxonomy shared by every pipeline stage.

Only exhausted retries and fatal/validation errors cross stage boundaries;
each stage recovers from its own transient failures.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    retryable = False


class ValidationError(PipelineError):
    """Bad input. Rejected to the caller, never retried."""


class TransientProviderError(PipelineError):
    """Timeout, 5xx or connection failure from an external dependency."""

    retryable = True


class RateLimitError(TransientProviderError):
    """Provider rate limit. Honors the declared retry-after, then behaves as transient."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class MalformedOutputError(PipelineError):
    """Model output failed schema validation."""

    def __init__(self, message: str, raw_output: Optional[str] = None):
        super().__init__(message)
        self.raw_output = raw_output


class DuplicatePushError(PipelineError):
    """Target reports the issue already exists. Treated as success."""

    def __init__(self, message: str, external_ref: str):
        super().__init__(message)
        self.external_ref = external_ref


class FatalConfigError(PipelineError):
    """Missing credentials or template. Aborts the affected job only."""


class JobCancelledError(PipelineError):
    """The job's workspace was deleted; dropped at the next stage boundary."""


class CircuitOpenError(PipelineError):
    """Provider circuit is open. Not retried in place; the caller falls back or requeues."""

    retryable = True
