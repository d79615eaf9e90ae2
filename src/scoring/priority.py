# src/scoring/priority.py
"""
Cluster priority:

    priority = w1 * ln(1 + clusterSize)
             + w2 * |avgSentiment|
             + w3 * recencyDecay(mostRecentMemberAge)

recencyDecay halves every ``recency_half_life_days``. The score is bucketed
into low / medium / high by fixed thresholds.
"""

import math
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from src.config.settings import Settings
from src.models.schemas import Cluster, FeedbackItem, PriorityBucket, utcnow


@dataclass
class PriorityResult:
    score: float
    bucket: PriorityBucket


class PriorityScorer:
    """Deterministic priority given cluster state and a reference time."""

    def __init__(self, config: Settings):
        self.config = config

    def recency_decay(self, age_days: float) -> float:
        age_days = max(0.0, age_days)
        return 0.5 ** (age_days / self.config.recency_half_life_days)

    def bucket(self, score: float) -> PriorityBucket:
        if score >= self.config.priority_high_threshold:
            return PriorityBucket.HIGH
        if score >= self.config.priority_medium_threshold:
            return PriorityBucket.MEDIUM
        return PriorityBucket.LOW

    def score(self, cluster_size: int, avg_sentiment: float, most_recent_age_days: float) -> PriorityResult:
        value = (
            self.config.priority_weight_size * math.log1p(max(0, cluster_size))
            + self.config.priority_weight_sentiment * abs(avg_sentiment)
            + self.config.priority_weight_recency * self.recency_decay(most_recent_age_days)
        )
        return PriorityResult(score=value, bucket=self.bucket(value))

    def score_members(self, members: List[FeedbackItem], now: Optional[datetime] = None) -> PriorityResult:
        """Score a cluster from its member items. Members without sentiment don't count toward the average."""
        if not members:
            return PriorityResult(score=0.0, bucket=PriorityBucket.LOW)
        now = now or utcnow()
        sentiments = [m.sentiment for m in members if m.sentiment is not None]
        avg_sentiment = sum(sentiments) / len(sentiments) if sentiments else 0.0
        most_recent = max(m.created_at for m in members)
        age_days = (now - most_recent).total_seconds() / 86400.0
        return self.score(len(members), avg_sentiment, age_days)

    def apply(self, cluster: Cluster, members: List[FeedbackItem], now: Optional[datetime] = None) -> Cluster:
        """Write the recomputed score and bucket onto ``cluster``."""
        result = self.score_members(members, now)
        cluster.priority_score = result.score
        cluster.priority_bucket = result.bucket
        return cluster
