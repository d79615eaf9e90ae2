"""Unit tests for the PriorityScorer class."""
import math
import pytest
from datetime import datetime, timedelta, timezone

from src.models.schemas import Cluster, FeedbackItem, PriorityBucket
from src.scoring.priority import PriorityScorer

NOW = datetime(2025, 3, 15, tzinfo=timezone.utc)


@pytest.fixture
def scorer(config):
    return PriorityScorer(config)


def item(item_id, sentiment=None, age_days=0):
    return FeedbackItem(
        id=item_id, workspace_id="ws1", source_system="s", external_id=item_id, content="x",
        created_at=NOW - timedelta(days=age_days), sentiment=sentiment, content_hash="h",
    )


class TestPriorityScorer:
    """Test PriorityScorer class."""

    def test_formula(self, scorer):
        result = scorer.score(cluster_size=3, avg_sentiment=-0.5, most_recent_age_days=14)
        assert result.score == pytest.approx(math.log(4) + 0.5 + 0.5)

    def test_recency_halves_every_half_life(self, scorer):
        assert scorer.recency_decay(0) == 1.0
        assert scorer.recency_decay(14) == pytest.approx(0.5)
        assert scorer.recency_decay(28) == pytest.approx(0.25)

    def test_buckets(self, scorer):
        assert scorer.bucket(0.99) == PriorityBucket.LOW
        assert scorer.bucket(1.0) == PriorityBucket.MEDIUM
        assert scorer.bucket(1.99) == PriorityBucket.MEDIUM
        assert scorer.bucket(2.0) == PriorityBucket.HIGH

    @pytest.mark.parametrize("size", [1, 2, 5, 20, 100])
    def test_monotonic_in_cluster_size(self, scorer, size):
        smaller = scorer.score(size, -0.4, 3).score
        larger = scorer.score(size + 1, -0.4, 3).score
        assert larger > smaller

    @pytest.mark.parametrize("sentiment", [0.0, 0.3, -0.6])
    def test_monotonic_in_sentiment_magnitude(self, scorer, sentiment):
        weaker = scorer.score(4, sentiment, 3).score
        stronger = scorer.score(4, math.copysign(abs(sentiment) + 0.2, sentiment or 1), 3).score
        assert stronger > weaker

    def test_monotonic_in_recency(self, scorer):
        assert scorer.score(4, -0.4, 1).score > scorer.score(4, -0.4, 10).score

    def test_members_without_sentiment_ignored_in_average(self, scorer):
        result = scorer.score_members([item("a", -0.8), item("b", None)], NOW)
        assert result.score == pytest.approx(math.log(3) + 0.8 + 1.0)

    def test_uses_most_recent_member(self, scorer):
        result = scorer.score_members([item("a", age_days=30), item("b", age_days=14)], NOW)
        assert result.score == pytest.approx(math.log(3) + 0.5)

    def test_deterministic_for_reference_time(self, scorer):
        members = [item("a", -0.3, 2), item("b", 0.6, 5)]
        assert scorer.score_members(members, NOW) == scorer.score_members(members, NOW)

    def test_apply_sets_cluster_fields(self, scorer):
        cluster = Cluster(workspace_id="ws1", member_item_ids={"a", "b"})
        scorer.apply(cluster, [item("a", -0.9), item("b", -0.9)], NOW)
        assert cluster.priority_bucket == PriorityBucket.HIGH
        assert cluster.priority_score > 2.0

    def test_empty_cluster_is_low(self, scorer):
        assert scorer.score_members([], NOW).bucket == PriorityBucket.LOW
