# src/agents/llm_agent.py
import abc
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from src.agents.provider_errors import translate_openai_error
from src.config.settings import Settings
from src.models.errors import FatalConfigError, MalformedOutputError, TransientProviderError
from src.models.schemas import Tier

logger = logging.getLogger(__name__)


@dataclass
class ProviderResponse:
    content: str
    input_tokens: int
    output_tokens: int
    model: str

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ModelProvider(abc.ABC):
    """One chat model behind the router. Implementations are interchangeable."""

    tier: Tier
    model: str

    @abc.abstractmethod
    def complete(self, messages: List[dict], timeout: Optional[float] = None) -> ProviderResponse:
        """
        Send ``messages`` to the model.

        Raises:
            TransientProviderError: timeout, 5xx or connection failure
            RateLimitError: provider rate limit (carries retry_after)
            FatalConfigError: credentials rejected
        """


class OpenAIChatProvider(ModelProvider):
    """OpenAI chat completions for one tier/model."""

    def __init__(self, config: Settings, model: str, tier: Tier):
        if not config.openai_api_key:
            raise FatalConfigError("OPENAI_API_KEY is not configured")
        self.config = config
        self.model = model
        self.tier = tier
        # Retries are owned by the router
        self.client = OpenAI(api_key=config.openai_api_key, timeout=config.llm_timeout_seconds, max_retries=0)

    def complete(self, messages: List[dict], timeout: Optional[float] = None) -> ProviderResponse:
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                timeout=timeout or self.config.llm_timeout_seconds,
            )
        except openai.OpenAIError as e:
            raise translate_openai_error(e) from e

        if not response.choices:
            raise TransientProviderError(f"Empty completion from {self.model}")
        usage = response.usage
        return ProviderResponse(
            content=response.choices[0].message.content or "",
            input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
            output_tokens=getattr(usage, "completion_tokens", 0) or 0,
            model=response.model or self.model,
        )


def build_providers(config: Settings) -> Dict[Tier, ModelProvider]:
    """One OpenAI provider per tier, cheapest first."""
    return {
        Tier.CHEAP: OpenAIChatProvider(config, config.openai_model_cheap, Tier.CHEAP),
        Tier.MID: OpenAIChatProvider(config, config.openai_model_mid, Tier.MID),
        Tier.PREMIUM: OpenAIChatProvider(config, config.openai_model_premium, Tier.PREMIUM),
    }


def parse_json_object(response: str) -> Dict[str, Any]:
    """
    Parse a model reply that should be a single JSON object.

    Tolerates markdown code fences and prose around the object.

    Raises:
        MalformedOutputError: No JSON object could be recovered
    """
    # Strategy 1: direct parse after removing code fences
    cleaned = re.sub(r'```(?:json)?\s*|\s*```', '', response or "").strip()
    try:
        parsed = json.loads(cleaned)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass

    # Strategy 2: outermost braces
    match = re.search(r'\{.*\}', cleaned, re.DOTALL)
    if match:
        try:
            parsed = json.loads(match.group(0))
            if isinstance(parsed, dict):
                return parsed
        except json.JSONDecodeError:
            pass

    raise MalformedOutputError("Model reply is not a JSON object", raw_output=response)


ANALYSIS_PROMPT = """You are analyzing customer feedback for a product team.

Customer feedback:
\"\"\"{content}\"\"\"

Return ONLY a JSON object with:
- "sentiment": a number between -1 (very negative) and 1 (very positive)
- "themes": an array of short theme labels (2-5 words each) for every distinct issue or request

Response:"""

STRICT_ANALYSIS_PROMPT = """Return a single JSON object and nothing else. No prose, no markdown.
Schema: {{"sentiment": <number from -1 to 1>, "themes": [<string>, ...]}}

Customer feedback:
\"\"\"{content}\"\"\"
"""


def analysis_messages(content: str, strict: bool = False) -> List[dict]:
    template = STRICT_ANALYSIS_PROMPT if strict else ANALYSIS_PROMPT
    return [{"role": "user", "content": template.format(content=content)}]


def parse_analysis(response: str) -> Dict[str, Any]:
    """Validate an analysis reply into ``{"sentiment": float, "themes": [str]}``."""
    data = parse_json_object(response)
    try:
        sentiment = float(data["sentiment"])
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedOutputError(f"Analysis reply has no numeric sentiment: {e}", raw_output=response) from e
    if not -1.0 <= sentiment <= 1.0:
        raise MalformedOutputError(f"Sentiment {sentiment} outside [-1, 1]", raw_output=response)

    themes = data.get("themes", [])
    if not isinstance(themes, list) or not all(isinstance(t, str) for t in themes):
        raise MalformedOutputError("Analysis themes must be an array of strings", raw_output=response)
    return {"sentiment": sentiment, "themes": sorted({t.strip() for t in themes if t.strip()})}
