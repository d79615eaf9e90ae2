"""
Cluster analysis stage: runs the representative feedback of a cluster through
the LLM router, stores the result as the cluster's active analysis and writes
the model's sentiment back onto the members so priority and the
representative reflect it.
"""

import logging
from typing import Optional

from src.agents.router import LLMRouter
from src.config.settings import Settings
from src.data_access.store import CanonicalStore
from src.models.errors import JobCancelledError, MalformedOutputError, ValidationError
from src.models.schemas import AnalysisResult, OperatorTicket, TaskKind, TicketQueue, utcnow
from src.pipelines.dedup import pick_representative
from src.scoring.priority import PriorityScorer

logger = logging.getLogger(__name__)


class ClusterAnalyzer:
    """Computes and stores AnalysisResults for clusters."""

    def __init__(self, config: Settings, store: CanonicalStore, router: Optional[LLMRouter] = None,
                 scorer: Optional[PriorityScorer] = None):
        self.config = config
        self.store = store
        self.router = router or LLMRouter(config, store)
        self.scorer = scorer or PriorityScorer(config)

    def analyze_cluster(self, cluster_id: str) -> Optional[AnalysisResult]:
        """
        Analyze the cluster's representative item.

        The previous active result (if any) is kept for audit and marked
        inactive by the store.

        Returns:
            The active AnalysisResult, or None when the model's reply stayed
            malformed and the cluster went to the manual-review queue
        """
        cluster = self.store.get_cluster(cluster_id)
        if cluster is None:
            raise ValidationError(f"Cluster {cluster_id} does not exist")
        if self.store.is_workspace_deleted(cluster.workspace_id):
            raise JobCancelledError(f"Workspace {cluster.workspace_id} was deleted")
        if not cluster.representative_item_id:
            raise ValidationError(f"Cluster {cluster_id} has no members")

        representative = self.store.get_feedback_item(cluster.representative_item_id)
        if representative is None:
            raise ValidationError(f"Representative {cluster.representative_item_id} of {cluster_id} is missing")

        try:
            result = self.router.analyze(
                representative.content,
                TaskKind.FEEDBACK_ANALYSIS,
                workspace_id=cluster.workspace_id,
                cluster_id=cluster.id,
            )
        except MalformedOutputError as e:
            self._send_to_review(cluster.id, e)
            return None

        active = self.store.get_active_analysis(cluster.id)
        if active is not None and active.cache_key == result.cache_key:
            # Same input, same answer; keep the existing active result
            result = active
        else:
            self.store.save_analysis(result)
            logger.info(
                f"Analyzed cluster {cluster.id} on {result.tier} tier "
                f"(sentiment {result.sentiment:+.2f}, {len(result.themes)} themes, "
                f"{'cache hit' if result.cache_hit else f'${result.cost:.6f}'})"
            )

        self._apply(cluster.id, result)
        return result

    def _apply(self, cluster_id: str, result: AnalysisResult) -> None:
        """Write the analysis sentiment onto every member, then refresh representative and priority."""
        with self.store.lock(f"cluster:{cluster_id}"):
            cluster = self.store.get_cluster(cluster_id)
            if cluster is None or not cluster.member_item_ids:
                return

            for item_id in sorted(cluster.member_item_ids):
                with self.store.lock(f"item:{item_id}"):
                    item = self.store.get_feedback_item(item_id)
                    if item is None or item.sentiment == result.sentiment:
                        continue
                    item.sentiment = result.sentiment
                    item.updated_at = utcnow()
                    self.store.upsert_feedback_item(item)

            members = self.store.get_feedback_items(sorted(cluster.member_item_ids))
            cluster.representative_item_id = pick_representative(members)
            self.scorer.apply(cluster, members)
            cluster.failure_reason = None
            cluster.updated_at = utcnow()
            self.store.save_cluster(cluster)

    def _send_to_review(self, cluster_id: str, error: MalformedOutputError) -> None:
        reason = f"{type(error).__name__}: {error}"
        with self.store.lock(f"cluster:{cluster_id}"):
            cluster = self.store.get_cluster(cluster_id)
            if cluster is None:
                return
            # One open ticket per cluster; redelivered jobs don't file another
            if cluster.failure_reason == reason:
                return
            cluster.failure_reason = reason
            cluster.updated_at = utcnow()
            self.store.save_cluster(cluster)

        self.store.add_ticket(OperatorTicket(
            queue=TicketQueue.MANUAL_REVIEW,
            entity_type="cluster",
            entity_id=cluster_id,
            workspace_id=cluster.workspace_id,
            reason=f"analysis: {reason}",
        ))
        logger.warning(f"Analysis of cluster {cluster_id} sent to manual review: {error}")
