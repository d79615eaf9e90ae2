# src/agents/router.py
"""
Tiered model routing.

Every model call in the pipeline goes through LLMRouter: it picks a tier from
a cheap complexity heuristic, consults the analysis cache before any external
call, retries transient failures with backoff, falls back to cheaper tiers
for analysis, handles malformed output with one stricter retry and records
token cost against the workspace.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.agents.cache import AnalysisCache, cache_key, normalize_content
from src.agents.cost import CostLedger
from src.agents.llm_agent import (
    ModelProvider,
    ProviderResponse,
    analysis_messages,
    build_providers,
    parse_analysis,
)
from src.config.settings import Settings
from src.data_access.store import CanonicalStore
from src.models.errors import CircuitOpenError, MalformedOutputError, TransientProviderError
from src.models.schemas import AnalysisResult, Cluster, TaskKind, Tier, TIER_ORDER
from src.resilience.circuit_breaker import CircuitBreaker
from src.resilience.locks import KeyedLock
from src.resilience.rate_limiter import RateLimiterRegistry
from src.resilience.retry import call_with_retry

logger = logging.getLogger(__name__)

CLAUSE_MARKERS = re.compile(r"[.!?;]+|\b(?:but|however|also|although|plus|additionally)\b", re.IGNORECASE)
WORD = re.compile(r"[a-z']+")

POSITIVE_CUES = {
    "love", "great", "good", "excellent", "amazing", "like", "happy", "awesome",
    "helpful", "easy", "fast", "nice", "perfect", "thanks",
}
NEGATIVE_CUES = {
    "hate", "bad", "terrible", "awful", "broken", "slow", "bug", "crash", "crashes",
    "annoying", "confusing", "hard", "missing", "fails", "error", "worst", "frustrating",
}

# Content length at which the length component saturates
LENGTH_SATURATION = 1200
# Clause count at which the topic component saturates
TOPIC_SATURATION = 5


@dataclass
class SynthesisOutcome:
    payload: Dict[str, Any]
    tier: Tier
    cache_key: str
    cost: float
    cache_hit: bool


def complexity_score(content: str) -> float:
    """
    Heuristic in [0, 1] combining content length, number of distinct topics
    and sentiment ambiguity (positive and negative cues both present).
    """
    text = content or ""
    length = min(1.0, len(text) / LENGTH_SATURATION)

    clauses = [c for c in CLAUSE_MARKERS.split(text) if c and c.strip()]
    topics = min(1.0, max(0, len(clauses) - 1) / (TOPIC_SATURATION - 1))

    words = set(WORD.findall(text.lower()))
    ambiguity = 1.0 if words & POSITIVE_CUES and words & NEGATIVE_CUES else 0.0

    return round(0.4 * length + 0.35 * topics + 0.25 * ambiguity, 4)


class LLMRouter:
    """Routes analysis and synthesis calls to cheap / mid / premium providers."""

    def __init__(
        self,
        config: Settings,
        store: CanonicalStore,
        providers: Optional[Dict[Tier, ModelProvider]] = None,
        cache: Optional[AnalysisCache] = None,
        ledger: Optional[CostLedger] = None,
        rate_limiters: Optional[RateLimiterRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Initialize the router.

        Args:
            config: Application settings
            store: Canonical store (cache and cost aggregates live there)
            providers: Model provider per tier; OpenAI providers by default
            cache: Analysis cache
            ledger: Workspace cost ledger
            rate_limiters: Token buckets shared with the other stages
            sleep: Backoff sleep (injectable for tests)
        """
        self.config = config
        self.store = store
        self.providers = providers if providers is not None else build_providers(config)
        self.cache = cache or AnalysisCache(config, store)
        self.ledger = ledger or CostLedger(config, store)
        self.rate_limiters = rate_limiters
        self._sleep = sleep
        self._inflight = KeyedLock()
        self.breakers = {
            Tier(tier): CircuitBreaker(
                f"llm-{Tier(tier).value}",
                failure_threshold=config.circuit_failure_threshold,
                recovery_timeout_seconds=config.circuit_recovery_seconds,
            )
            for tier in self.providers
        }

    def select_tier(self, content: str, task_kind: TaskKind) -> Tier:
        if TaskKind(task_kind) == TaskKind.REQUIREMENT_SYNTHESIS:
            return Tier.PREMIUM
        score = complexity_score(content)
        if score >= self.config.complexity_premium_threshold:
            return Tier.PREMIUM
        if score >= self.config.complexity_mid_threshold:
            return Tier.MID
        return Tier.CHEAP

    def fallback_chain(self, tier: Tier) -> List[Tier]:
        """``tier`` followed by every cheaper configured tier."""
        index = TIER_ORDER.index(Tier(tier))
        return [t for t in reversed(TIER_ORDER[:index + 1]) if t in self.providers]

    def analyze(
        self,
        content: str,
        task_kind: TaskKind = TaskKind.FEEDBACK_ANALYSIS,
        workspace_id: str = "",
        cluster_id: Optional[str] = None,
    ) -> AnalysisResult:
        """
        Analyze feedback content (sentiment and themes).

        Transient failures and open circuits escalate to the next cheaper tier.

        Raises:
            TransientProviderError: every tier in the chain failed transiently
            CircuitOpenError: every tier in the chain had an open circuit
            MalformedOutputError: the reply failed validation twice
        """
        normalized = normalize_content(content)
        selected = self.select_tier(normalized, task_kind)
        last_error: Optional[Exception] = None

        for tier in self.fallback_chain(selected):
            key = cache_key(normalized, tier, task_kind)
            with self._inflight.hold(key):
                cached = self.cache.get(key)
                if cached is not None:
                    return self._analysis_result(cached, tier, key, 0.0, True, cluster_id)
                try:
                    payload, cost = self._call_validated(
                        tier,
                        analysis_messages(content),
                        analysis_messages(content, strict=True),
                        parse_analysis,
                        workspace_id,
                    )
                except (TransientProviderError, CircuitOpenError) as e:
                    last_error = e
                    logger.warning(f"Tier {tier.value} unavailable for analysis ({e}); trying a cheaper tier")
                    continue
                self.cache.put(key, payload)
                return self._analysis_result(payload, tier, key, cost, False, cluster_id)

        if last_error is None:
            raise CircuitOpenError("No model providers are configured")
        raise last_error

    def synthesize(
        self,
        cluster: Cluster,
        prompt: List[dict],
        stricter_prompt: List[dict],
        validator: Callable[[str], Dict[str, Any]],
        workspace_id: str,
    ) -> SynthesisOutcome:
        """
        Generate a requirement for ``cluster`` on the premium tier only.

        Args:
            cluster: Cluster being synthesized
            prompt: Chat messages for the first attempt
            stricter_prompt: More constrained messages used after a malformed reply
            validator: Parses and validates a reply; raises MalformedOutputError
            workspace_id: Workspace charged for the call

        Raises:
            TransientProviderError / CircuitOpenError: premium tier unavailable
            MalformedOutputError: the reply failed validation twice
        """
        tier = Tier.PREMIUM
        normalized = normalize_content("\n".join(m["content"] for m in prompt))
        key = cache_key(normalized, tier, TaskKind.REQUIREMENT_SYNTHESIS)

        with self._inflight.hold(key):
            cached = self.cache.get(key)
            if cached is not None:
                logger.info(f"Synthesis for cluster {cluster.id} served from cache")
                return SynthesisOutcome(payload=cached, tier=tier, cache_key=key, cost=0.0, cache_hit=True)
            payload, cost = self._call_validated(tier, prompt, stricter_prompt, validator, workspace_id)
            self.cache.put(key, payload)

        return SynthesisOutcome(payload=payload, tier=tier, cache_key=key, cost=cost, cache_hit=False)

    def breaker_stats(self) -> Dict[str, dict]:
        return {tier.value: breaker.get_stats() for tier, breaker in self.breakers.items()}

    def _call_validated(
        self,
        tier: Tier,
        messages: List[dict],
        stricter_messages: List[dict],
        validator: Callable[[str], Dict[str, Any]],
        workspace_id: str,
    ) -> Tuple[Dict[str, Any], float]:
        """Call ``tier`` and validate; one stricter retry on malformed output."""
        response = self._call(tier, messages)
        cost = self.ledger.record(workspace_id, tier, response.input_tokens, response.output_tokens)
        try:
            return validator(response.content), cost
        except MalformedOutputError as e:
            logger.warning(f"Malformed reply from {tier.value} tier ({e}); retrying with stricter prompt")

        response = self._call(tier, stricter_messages)
        cost += self.ledger.record(workspace_id, tier, response.input_tokens, response.output_tokens)
        # A second malformed reply propagates to the caller
        return validator(response.content), cost

    def _call(self, tier: Tier, messages: List[dict]) -> ProviderResponse:
        provider = self.providers[tier]
        breaker = self.breakers[tier]

        def attempt() -> ProviderResponse:
            if not breaker.allow_request():
                raise CircuitOpenError(f"Circuit open for {tier.value} tier")
            if self.rate_limiters is not None:
                limiter_key = f"provider:{tier.value}"
                if not self.rate_limiters.acquire(limiter_key):
                    raise TransientProviderError(f"Rate limiter '{limiter_key}' wait timed out")
            try:
                response = provider.complete(messages, timeout=self.config.llm_timeout_seconds)
            except TransientProviderError:
                breaker.record_failure()
                raise
            breaker.record_success()
            return response

        return call_with_retry(
            attempt,
            max_attempts=self.config.llm_max_attempts,
            base_delay=self.config.retry_base_delay,
            description=f"{tier.value} tier completion",
            sleep=self._sleep,
        )

    @staticmethod
    def _analysis_result(payload: Dict[str, Any], tier: Tier, key: str, cost: float,
                         cache_hit: bool, cluster_id: Optional[str]) -> AnalysisResult:
        return AnalysisResult(
            cluster_id=cluster_id,
            tier=tier,
            sentiment=payload["sentiment"],
            themes=set(payload.get("themes", [])),
            cache_key=key,
            cost=cost,
            cache_hit=cache_hit,
        )
