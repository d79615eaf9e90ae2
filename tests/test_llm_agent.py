"""Unit tests for the OpenAI chat provider and reply parsing."""
import pytest
import httpx
import openai
from unittest.mock import MagicMock, Mock, patch

from src.agents.llm_agent import (
    OpenAIChatProvider,
    analysis_messages,
    build_providers,
    parse_analysis,
    parse_json_object,
)
from src.agents.provider_errors import translate_openai_error
from src.models.errors import (
    FatalConfigError,
    MalformedOutputError,
    RateLimitError,
    TransientProviderError,
    ValidationError,
)
from src.models.schemas import Tier


def completion(content="hello", prompt_tokens=12, completion_tokens=3):
    response = MagicMock()
    response.choices = [MagicMock()]
    response.choices[0].message.content = content
    response.usage.prompt_tokens = prompt_tokens
    response.usage.completion_tokens = completion_tokens
    response.model = "gpt-test"
    return response


def status_error(cls, status, headers=None):
    request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
    response = httpx.Response(status, request=request, headers=headers or {})
    return cls("error", response=response, body=None)


class TestOpenAIChatProvider:
    """Test OpenAIChatProvider class."""

    @patch('src.agents.llm_agent.OpenAI')
    def test_complete_returns_content_and_usage(self, mock_openai, config):
        mock_openai.return_value.chat.completions.create.return_value = completion("hi", 20, 5)
        provider = OpenAIChatProvider(config, "gpt-test", Tier.CHEAP)

        response = provider.complete([{"role": "user", "content": "Hello"}])

        assert response.content == "hi"
        assert response.input_tokens == 20
        assert response.output_tokens == 5
        assert response.total_tokens == 25
        kwargs = mock_openai.return_value.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-test"
        assert kwargs["timeout"] == config.llm_timeout_seconds

    @patch('src.agents.llm_agent.OpenAI')
    def test_sdk_retries_disabled(self, mock_openai, config):
        OpenAIChatProvider(config, "gpt-test", Tier.CHEAP)
        assert mock_openai.call_args.kwargs["max_retries"] == 0

    @patch('src.agents.llm_agent.OpenAI')
    def test_timeout_becomes_transient(self, mock_openai, config):
        request = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")
        mock_openai.return_value.chat.completions.create.side_effect = openai.APITimeoutError(request=request)
        provider = OpenAIChatProvider(config, "gpt-test", Tier.CHEAP)

        with pytest.raises(TransientProviderError):
            provider.complete([{"role": "user", "content": "Hello"}])

    def test_missing_key_is_fatal(self, config):
        config.openai_api_key = ""
        with pytest.raises(FatalConfigError):
            OpenAIChatProvider(config, "gpt-test", Tier.CHEAP)

    @patch('src.agents.llm_agent.OpenAI')
    def test_build_providers_one_per_tier(self, mock_openai, config):
        providers = build_providers(config)
        assert list(providers) == [Tier.CHEAP, Tier.MID, Tier.PREMIUM]
        assert providers[Tier.PREMIUM].model == config.openai_model_premium


class TestErrorTranslation:
    """Test translate_openai_error."""

    def test_rate_limit_carries_retry_after(self):
        error = translate_openai_error(status_error(openai.RateLimitError, 429, {"retry-after": "3"}))
        assert isinstance(error, RateLimitError)
        assert error.retry_after == 3.0

    def test_server_error_is_transient(self):
        error = translate_openai_error(status_error(openai.InternalServerError, 503))
        assert isinstance(error, TransientProviderError)

    def test_auth_error_is_fatal(self):
        error = translate_openai_error(status_error(openai.AuthenticationError, 401))
        assert isinstance(error, FatalConfigError)

    def test_bad_request_is_validation(self):
        error = translate_openai_error(status_error(openai.BadRequestError, 400))
        assert isinstance(error, ValidationError)


class TestParsing:
    """Test reply parsing helpers."""

    def test_json_in_code_fence(self):
        assert parse_json_object('```json\n{"a": 1}\n```') == {"a": 1}

    def test_json_surrounded_by_prose(self):
        assert parse_json_object('Sure! {"a": 1} Hope that helps.') == {"a": 1}

    def test_not_json(self):
        with pytest.raises(MalformedOutputError):
            parse_json_object("negative, mostly")

    def test_parse_analysis_normalizes_themes(self):
        parsed = parse_analysis('{"sentiment": -0.4, "themes": [" login ", "login", "sso"]}')
        assert parsed == {"sentiment": -0.4, "themes": ["login", "sso"]}

    def test_parse_analysis_rejects_out_of_range(self):
        with pytest.raises(MalformedOutputError):
            parse_analysis('{"sentiment": 2, "themes": []}')

    def test_strict_prompt_differs(self):
        assert analysis_messages("x") != analysis_messages("x", strict=True)
        assert "x" in analysis_messages("x", strict=True)[0]["content"]
