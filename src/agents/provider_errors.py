# src/agents/provider_errors.py
import openai

from src.models.errors import (
    FatalConfigError,
    PipelineError,
    RateLimitError,
    TransientProviderError,
    ValidationError,
)


def translate_openai_error(e: openai.OpenAIError) -> PipelineError:
    """Map an OpenAI SDK exception onto the pipeline error taxonomy."""
    if isinstance(e, openai.RateLimitError):
        retry_after = None
        try:
            retry_after = float(e.response.headers.get("retry-after"))
        except (AttributeError, TypeError, ValueError):
            pass
        return RateLimitError(f"OpenAI rate limit: {e}", retry_after=retry_after)
    if isinstance(e, (openai.APITimeoutError, openai.APIConnectionError, openai.InternalServerError)):
        return TransientProviderError(f"OpenAI unavailable: {e}")
    if isinstance(e, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return FatalConfigError(f"OpenAI credentials rejected: {e}")
    if isinstance(e, openai.APIStatusError) and e.status_code >= 500:
        return TransientProviderError(f"OpenAI server error {e.status_code}: {e}")
    return ValidationError(f"OpenAI rejected the request: {e}")
