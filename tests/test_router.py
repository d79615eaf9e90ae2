"""Unit tests for LLMRouter tier selection, caching, fallback and cost accounting."""
import json
import threading
import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import Mock

from conftest import FakeProvider, fake_providers
from src.agents.cache import AnalysisCache, cache_key, normalize_content
from src.agents.cost import CostLedger, period_for
from src.agents.router import LLMRouter, complexity_score
from src.models.errors import (
    CircuitOpenError,
    MalformedOutputError,
    RateLimitError,
    TransientProviderError,
)
from src.models.schemas import Cluster, TaskKind, Tier

SIMPLE = "The export button is hard to find."
COMPLEX = (
    "I love the new dashboard and the charts are great, but the export is broken and crashes every time. "
    "Also the login page is slow; however support was helpful. Additionally the mobile app is confusing "
    "and notifications arrive late. Plus the billing page shows the wrong currency for my team. " * 3
)
ANALYSIS = json.dumps({"sentiment": -0.6, "themes": ["export", "findability"]})


@pytest.fixture
def providers():
    return fake_providers()


@pytest.fixture
def router(config, store, providers):
    return LLMRouter(config, store, providers=providers, sleep=Mock())


class TestComplexity:
    """Test the complexity heuristic and tier selection."""

    def test_short_single_topic_is_low(self):
        assert complexity_score(SIMPLE) < 0.35

    def test_long_multi_topic_ambiguous_is_high(self):
        assert complexity_score(COMPLEX) >= 0.70

    def test_tier_selection(self, router):
        assert router.select_tier(SIMPLE, TaskKind.FEEDBACK_ANALYSIS) == Tier.CHEAP
        assert router.select_tier(COMPLEX, TaskKind.FEEDBACK_ANALYSIS) == Tier.PREMIUM

    def test_synthesis_always_premium(self, router):
        assert router.select_tier(SIMPLE, TaskKind.REQUIREMENT_SYNTHESIS) == Tier.PREMIUM

    def test_fallback_chain_goes_cheaper(self, router):
        assert router.fallback_chain(Tier.PREMIUM) == [Tier.PREMIUM, Tier.MID, Tier.CHEAP]
        assert router.fallback_chain(Tier.CHEAP) == [Tier.CHEAP]


class TestCache:
    """Test cache keys and TTL behavior."""

    def test_key_depends_on_content_tier_and_task(self):
        base = cache_key("text", Tier.CHEAP, TaskKind.FEEDBACK_ANALYSIS)
        assert base == cache_key("text", "cheap", "feedbackAnalysis")
        assert base != cache_key("text", Tier.MID, TaskKind.FEEDBACK_ANALYSIS)
        assert base != cache_key("text", Tier.CHEAP, TaskKind.REQUIREMENT_SYNTHESIS)
        assert base != cache_key("other", Tier.CHEAP, TaskKind.FEEDBACK_ANALYSIS)

    def test_normalization(self):
        assert normalize_content("  Export  IS\nbroken ") == "export is broken"

    def test_entries_expire_and_purge(self, config, store):
        now = [datetime(2025, 3, 1, tzinfo=timezone.utc)]
        cache = AnalysisCache(config, store, clock=lambda: now[0])
        cache.put("k", {"sentiment": 0.1, "themes": []})
        assert cache.get("k") == {"sentiment": 0.1, "themes": []}

        now[0] += timedelta(hours=config.cache_ttl_hours, seconds=1)
        assert cache.get("k") is None
        assert cache.purge_expired() == 1


class TestAnalyze:
    """Test LLMRouter.analyze."""

    def test_simple_item_routed_to_cheapest_tier_and_cached(self, router, providers, store):
        providers[Tier.CHEAP].replies = [ANALYSIS]

        first = router.analyze(SIMPLE, TaskKind.FEEDBACK_ANALYSIS, workspace_id="ws1")
        second = router.analyze(SIMPLE, TaskKind.FEEDBACK_ANALYSIS, workspace_id="ws1")

        assert first.tier == Tier.CHEAP
        assert first.cost > 0
        assert first.cache_hit is False
        assert second.cache_hit is True
        assert second.cost == 0.0
        assert second.cache_key == first.cache_key
        assert len(providers[Tier.CHEAP].calls) == 1
        assert providers[Tier.MID].calls == []
        assert providers[Tier.PREMIUM].calls == []

    def test_cost_recorded_per_workspace(self, router, providers, store, config):
        providers[Tier.CHEAP].replies = [ANALYSIS]
        router.analyze(SIMPLE, TaskKind.FEEDBACK_ANALYSIS, workspace_id="ws1")
        router.analyze(SIMPLE, TaskKind.FEEDBACK_ANALYSIS, workspace_id="ws1")

        entry = CostLedger(config, store).report("ws1")
        assert entry.calls == 1
        assert entry.cost == pytest.approx(0.5 * config.price_per_1k_cheap)
        assert CostLedger(config, store).report("ws2").cost == 0.0

    def test_concurrent_identical_requests_call_provider_once(self, router, providers):
        barrier = threading.Barrier(8)
        results = []

        def call():
            barrier.wait()
            results.append(router.analyze(SIMPLE, TaskKind.FEEDBACK_ANALYSIS, workspace_id="ws1"))

        threads = [threading.Thread(target=call) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(providers[Tier.CHEAP].calls) == 1
        assert sum(1 for r in results if not r.cache_hit) == 1

    def test_transient_retries_then_succeeds(self, router, providers):
        providers[Tier.CHEAP].replies = [TransientProviderError("timeout"), RateLimitError("429", retry_after=2), ANALYSIS]

        result = router.analyze(SIMPLE, TaskKind.FEEDBACK_ANALYSIS, workspace_id="ws1")

        assert result.tier == Tier.CHEAP
        assert len(providers[Tier.CHEAP].calls) == 3
        router._sleep.assert_any_call(2)

    def test_exhausted_tier_falls_back_to_cheaper(self, router, providers):
        providers[Tier.PREMIUM].replies = [TransientProviderError("503")] * 3
        providers[Tier.MID].replies = [ANALYSIS]

        result = router.analyze(COMPLEX, TaskKind.FEEDBACK_ANALYSIS, workspace_id="ws1")

        assert result.tier == Tier.MID
        assert len(providers[Tier.PREMIUM].calls) == 3

    def test_open_circuit_skips_tier(self, router, providers):
        for _ in range(router.breakers[Tier.PREMIUM].failure_threshold):
            router.breakers[Tier.PREMIUM].record_failure()
        providers[Tier.MID].replies = [ANALYSIS]

        result = router.analyze(COMPLEX, TaskKind.FEEDBACK_ANALYSIS, workspace_id="ws1")

        assert result.tier == Tier.MID
        assert providers[Tier.PREMIUM].calls == []
        assert router.breaker_stats()["premium"]["state"] == "open"

    def test_every_tier_failing_raises(self, router, providers):
        for provider in providers.values():
            provider.replies = [TransientProviderError("down")] * 3

        with pytest.raises(TransientProviderError):
            router.analyze(SIMPLE, TaskKind.FEEDBACK_ANALYSIS, workspace_id="ws1")

    def test_malformed_output_retries_with_stricter_prompt(self, router, providers):
        providers[Tier.CHEAP].replies = ["I think it's negative", ANALYSIS]

        result = router.analyze(SIMPLE, TaskKind.FEEDBACK_ANALYSIS, workspace_id="ws1")

        assert result.sentiment == -0.6
        first, second = providers[Tier.CHEAP].calls
        assert first != second

    def test_malformed_twice_raises(self, router, providers):
        providers[Tier.CHEAP].replies = ["nope", "{\"sentiment\": 9}"]

        with pytest.raises(MalformedOutputError):
            router.analyze(SIMPLE, TaskKind.FEEDBACK_ANALYSIS, workspace_id="ws1")


class TestSynthesize:
    """Test LLMRouter.synthesize."""

    def validator(self, text):
        data = json.loads(text)
        if "title" not in data:
            raise MalformedOutputError("no title", raw_output=text)
        return data

    def test_uses_premium_only_and_never_falls_back(self, router, providers):
        providers[Tier.PREMIUM].replies = [TransientProviderError("timeout")] * 3
        cluster = Cluster(workspace_id="ws1")

        with pytest.raises(TransientProviderError):
            router.synthesize(cluster, [{"role": "user", "content": "p"}],
                              [{"role": "user", "content": "strict"}], self.validator, "ws1")

        assert providers[Tier.MID].calls == []
        assert providers[Tier.CHEAP].calls == []

    def test_open_circuit_fails_synthesis(self, router, providers):
        breaker = router.breakers[Tier.PREMIUM]
        for _ in range(breaker.failure_threshold):
            breaker.record_failure()

        with pytest.raises(CircuitOpenError):
            router.synthesize(Cluster(workspace_id="ws1"), [{"role": "user", "content": "p"}],
                              [{"role": "user", "content": "strict"}], self.validator, "ws1")

    def test_result_cached(self, router, providers):
        providers[Tier.PREMIUM].replies = [json.dumps({"title": "T"})]
        prompt = [{"role": "user", "content": "p"}]

        first = router.synthesize(Cluster(workspace_id="ws1"), prompt, prompt, self.validator, "ws1")
        second = router.synthesize(Cluster(workspace_id="ws1"), prompt, prompt, self.validator, "ws1")

        assert first.cache_hit is False
        assert second.cache_hit is True
        assert second.cost == 0.0
        assert len(providers[Tier.PREMIUM].calls) == 1


class TestCostLedger:
    """Test CostLedger."""

    def test_period_is_calendar_month(self):
        assert period_for(datetime(2025, 3, 31, 23, 59, tzinfo=timezone.utc)) == "2025-03"

    def test_cost_from_tokens_and_tier_price(self, config, store):
        ledger = CostLedger(config, store)
        cost = ledger.record("ws1", Tier.PREMIUM, 1500, 500, when=datetime(2025, 3, 2, tzinfo=timezone.utc))
        assert cost == pytest.approx(2.0 * config.price_per_1k_premium)
        report = ledger.report("ws1", "2025-03")
        assert report.input_tokens == 1500
        assert report.output_tokens == 500
        assert report.calls == 1
