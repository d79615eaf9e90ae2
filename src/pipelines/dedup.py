"""
Embedding-based deduplication.

Each embedded feedback item is placed into the existing cluster whose
centroid is most similar to its vector, provided the cosine similarity is at
least the configured threshold; otherwise it starts a new singleton cluster.
Centroids are running means of the member vectors. Clusters are append-only:
they are never merged with each other.
"""

from dataclasses import dataclass
from typing import List, Optional, Tuple
import logging
import argparse

import numpy as np

from src.config.settings import Settings
from src.data_access.store import CanonicalStore
from src.models.errors import ValidationError
from src.models.schemas import Cluster, EmbeddingVector, FeedbackItem, utcnow
from src.scoring.priority import PriorityScorer


logger = logging.getLogger(__name__)

# Rescans allowed when a candidate cluster moves away between scan and lock.
MAX_PLACEMENT_ATTEMPTS = 5


def cosine_similarity(a, b) -> float:
    """Cosine similarity of two vectors; 0.0 when either has zero norm."""
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    denom = np.linalg.norm(a) * np.linalg.norm(b)
    if denom == 0:
        return 0.0
    return float(np.dot(a, b) / denom)


def pick_representative(members: List[FeedbackItem]) -> Optional[str]:
    """
    Member with the highest |sentiment|; ties go to the most recent
    created_at, then to the smallest id.
    """
    if not members:
        return None
    ranked = sorted(
        members,
        key=lambda m: (-abs(m.sentiment or 0.0), -m.created_at.timestamp(), m.id),
    )
    return ranked[0].id


@dataclass
class DedupOutcome:
    cluster: Cluster
    created: bool
    changed: bool


class DeduplicationEngine:
    """Assigns embedded feedback items to clusters."""

    def __init__(self, config: Settings, store: CanonicalStore, scorer: Optional[PriorityScorer] = None):
        self.config = config
        self.store = store
        self.scorer = scorer or PriorityScorer(config)
        self.threshold = config.similarity_threshold

    def assign(self, item_id: str) -> Cluster:
        """Place a feedback item and return the cluster it belongs to."""
        return self.place_item(item_id).cluster

    def place_item(self, item_id: str) -> DedupOutcome:
        """
        Place a feedback item into its cluster.

        Re-running for an item whose embedding has not changed since it was
        placed is a no-op. An item whose embedding changed is removed from
        its old cluster and placed again.

        Raises:
            ValidationError: Unknown item, or the item has no current embedding
        """
        item = self.store.get_feedback_item(item_id)
        if item is None:
            raise ValidationError(f"Feedback item {item_id} does not exist")
        embedding = self.store.get_embedding(item_id)
        if embedding is None or item.embedding_stale or embedding.content_hash != item.content_hash:
            raise ValidationError(f"Feedback item {item_id} has no current embedding")

        current = self.store.find_cluster_for_item(item_id)
        if current is not None:
            if current.member_embedding_ids.get(item_id) == embedding.id:
                return DedupOutcome(cluster=current, created=False, changed=False)
            self._remove_member(current.id, item_id)

        return self._place(item, embedding)

    def nearest_cluster(self, workspace_id: str, vector: List[float]) -> Tuple[Optional[Cluster], float]:
        """Most similar cluster of the workspace and its similarity."""
        clusters = [
            c for c in self.store.list_clusters(workspace_id)
            if c.centroid and c.member_item_ids
        ]
        if not clusters:
            return None, 0.0

        centroids = np.array([c.centroid for c in clusters], dtype=float)
        v = np.asarray(vector, dtype=float)
        norms = np.linalg.norm(centroids, axis=1) * np.linalg.norm(v)
        norms[norms == 0] = np.inf
        similarities = centroids @ v / norms

        best = int(np.argmax(similarities))
        return clusters[best], float(similarities[best])

    def _place(self, item: FeedbackItem, embedding: EmbeddingVector) -> DedupOutcome:
        for _ in range(MAX_PLACEMENT_ATTEMPTS):
            candidate, similarity = self.nearest_cluster(item.workspace_id, embedding.vector)

            if candidate is not None and similarity >= self.threshold:
                with self.store.lock(f"cluster:{candidate.id}"):
                    fresh = self.store.get_cluster(candidate.id)
                    if (fresh is not None and fresh.centroid
                            and cosine_similarity(fresh.centroid, embedding.vector) >= self.threshold):
                        return self._absorb(fresh, item, embedding)
                logger.debug(f"Cluster {candidate.id} moved while placing {item.id}; rescanning")
                continue

            # Creation is serialized per workspace; a concurrent creator may
            # have produced a matching cluster since the scan above.
            with self.store.lock(f"workspace-clusters:{item.workspace_id}"):
                candidate, similarity = self.nearest_cluster(item.workspace_id, embedding.vector)
                if candidate is not None and similarity >= self.threshold:
                    continue
                return self._create(item, embedding)

        raise ValidationError(f"Could not place item {item.id} after {MAX_PLACEMENT_ATTEMPTS} attempts")

    def _create(self, item: FeedbackItem, embedding: EmbeddingVector) -> DedupOutcome:
        cluster = Cluster(
            workspace_id=item.workspace_id,
            representative_item_id=item.id,
            member_item_ids={item.id},
            member_embedding_ids={item.id: embedding.id},
            centroid=list(embedding.vector),
        )
        self.scorer.apply(cluster, [item])
        self.store.save_cluster(cluster)
        logger.info(f"Created cluster {cluster.id} for item {item.id}")
        return DedupOutcome(cluster=cluster, created=True, changed=True)

    def _absorb(self, cluster: Cluster, item: FeedbackItem, embedding: EmbeddingVector) -> DedupOutcome:
        n = len(cluster.member_item_ids)
        centroid = (np.asarray(cluster.centroid, dtype=float) * n + np.asarray(embedding.vector, dtype=float)) / (n + 1)

        cluster.member_item_ids.add(item.id)
        cluster.member_embedding_ids[item.id] = embedding.id
        cluster.centroid = centroid.tolist()
        self._refresh(cluster)
        self.store.save_cluster(cluster)
        logger.info(f"Item {item.id} joined cluster {cluster.id} ({len(cluster.member_item_ids)} members)")
        return DedupOutcome(cluster=cluster, created=False, changed=True)

    def _remove_member(self, cluster_id: str, item_id: str) -> None:
        with self.store.lock(f"cluster:{cluster_id}"):
            cluster = self.store.get_cluster(cluster_id)
            if cluster is None or item_id not in cluster.member_item_ids:
                return
            cluster.member_item_ids.discard(item_id)
            cluster.member_embedding_ids.pop(item_id, None)

            # Recompute from the embeddings the remaining members were placed with;
            # a member re-embedded but not yet re-placed is left out
            embeddings = self.store.get_embeddings(sorted(cluster.member_item_ids))
            vectors = [
                e.vector for member_id, e in embeddings.items()
                if cluster.member_embedding_ids.get(member_id) == e.id
            ]
            cluster.centroid = np.mean(np.array(vectors, dtype=float), axis=0).tolist() if vectors else None
            self._refresh(cluster)
            self.store.save_cluster(cluster)
            logger.info(f"Item {item_id} left cluster {cluster_id} after its content changed")

    def _refresh(self, cluster: Cluster) -> None:
        members = self.store.get_feedback_items(sorted(cluster.member_item_ids))
        cluster.representative_item_id = pick_representative(members)
        self.scorer.apply(cluster, members)
        cluster.updated_at = utcnow()

    def rescore_workspace(self, workspace_id: str) -> int:
        """Recompute priority of every cluster in a workspace (recency decays with time)."""
        count = 0
        for cluster in self.store.list_clusters(workspace_id):
            with self.store.lock(f"cluster:{cluster.id}"):
                fresh = self.store.get_cluster(cluster.id)
                if fresh is None or not fresh.member_item_ids:
                    continue
                self.scorer.apply(fresh, self.store.get_feedback_items(sorted(fresh.member_item_ids)))
                self.store.save_cluster(fresh)
                count += 1
        logger.info(f"Rescored {count} clusters in workspace {workspace_id}")
        return count


def main():
    """Main entry point for rescoring cluster priorities."""
    from src.data_access.postgres_store import PostgresStore

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(description='Recompute cluster priorities for a workspace.')
    parser.add_argument('--workspace', required=True, help='Workspace id')
    args = parser.parse_args()

    config = Settings()
    store = PostgresStore(config)
    try:
        engine = DeduplicationEngine(config, store)
        count = engine.rescore_workspace(args.workspace)
        clusters = store.list_clusters(args.workspace)
    finally:
        store.close()

    print("\n" + "="*60)
    print("CLUSTER PRIORITIES")
    print("="*60)
    print(f"Clusters rescored: {count}")
    for cluster in sorted(clusters, key=lambda c: -c.priority_score)[:20]:
        print(f"  {cluster.id}  {cluster.priority_bucket:<6}  {cluster.priority_score:.3f}  "
              f"({len(cluster.member_item_ids)} members)")
    print("="*60)


if __name__ == "__main__":
    main()
