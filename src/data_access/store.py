# src/data_access/store.py
"""
Canonical store interface.

Every component reads and writes pipeline state through this interface:
feedback items, embeddings, clusters, analysis results, requirements, sync
records, the analysis cache, workspace cost aggregates, the per-stage job
queues and the manual-review/operator queues.
"""

import abc
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Any, Dict, List, Optional

from src.models.schemas import (
    AnalysisResult,
    Cluster,
    CostEntry,
    EmbeddingVector,
    FeedbackItem,
    OperatorTicket,
    Requirement,
    Stage,
    StageJob,
    SyncRecord,
    TicketQueue,
)


class CanonicalStore(abc.ABC):
    """Durable record of all pipeline entities."""

    # -- feedback items ---------------------------------------------------
    @abc.abstractmethod
    def get_feedback_item(self, item_id: str) -> Optional[FeedbackItem]:
        """Return a feedback item by id."""

    @abc.abstractmethod
    def get_feedback_items(self, item_ids: List[str]) -> List[FeedbackItem]:
        """Return the feedback items that exist among ``item_ids``."""

    @abc.abstractmethod
    def upsert_feedback_item(self, item: FeedbackItem) -> None:
        """Insert or update by (workspace_id, source_system, external_id)."""

    # -- embeddings -------------------------------------------------------
    @abc.abstractmethod
    def save_embedding(self, embedding: EmbeddingVector) -> None:
        """Store the (single) embedding owned by a feedback item."""

    @abc.abstractmethod
    def get_embeddings(self, item_ids: List[str]) -> Dict[str, EmbeddingVector]:
        """Map feedback item id -> embedding for the ids that have one."""

    def get_embedding(self, item_id: str) -> Optional[EmbeddingVector]:
        return self.get_embeddings([item_id]).get(item_id)

    # -- clusters ---------------------------------------------------------
    @abc.abstractmethod
    def save_cluster(self, cluster: Cluster) -> None:
        """Persist a cluster and (re)assign its members to it."""

    @abc.abstractmethod
    def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        """Return a cluster by id."""

    @abc.abstractmethod
    def list_clusters(self, workspace_id: str) -> List[Cluster]:
        """All clusters of a workspace."""

    @abc.abstractmethod
    def find_cluster_for_item(self, item_id: str) -> Optional[Cluster]:
        """The cluster an item currently belongs to, if any."""

    # -- analysis results -------------------------------------------------
    @abc.abstractmethod
    def save_analysis(self, result: AnalysisResult) -> None:
        """Store a result; previous results of the same cluster become inactive."""

    @abc.abstractmethod
    def get_active_analysis(self, cluster_id: str) -> Optional[AnalysisResult]:
        """The one active analysis of a cluster."""

    @abc.abstractmethod
    def list_analysis(self, cluster_id: str) -> List[AnalysisResult]:
        """All results of a cluster, oldest first, superseded ones included."""

    # -- requirements -----------------------------------------------------
    @abc.abstractmethod
    def save_requirement(self, requirement: Requirement) -> None:
        """Insert or update a requirement."""

    @abc.abstractmethod
    def get_requirement(self, requirement_id: str) -> Optional[Requirement]:
        """Return a requirement by id."""

    @abc.abstractmethod
    def get_current_requirement(self, cluster_id: str) -> Optional[Requirement]:
        """Latest requirement of a cluster that has not been superseded."""

    @abc.abstractmethod
    def list_requirements(self, workspace_id: str, status: Optional[str] = None) -> List[Requirement]:
        """Requirements of a workspace, optionally filtered by status."""

    # -- sync records -----------------------------------------------------
    @abc.abstractmethod
    def get_sync_record(self, idempotency_key: str) -> Optional[SyncRecord]:
        """The record for an idempotency key. There is at most one per key."""

    @abc.abstractmethod
    def save_sync_record(self, record: SyncRecord) -> None:
        """Insert or update by idempotency key."""

    @abc.abstractmethod
    def list_sync_records(self, state: Optional[str] = None) -> List[SyncRecord]:
        """All sync records, optionally filtered by state."""

    # -- analysis cache ---------------------------------------------------
    @abc.abstractmethod
    def cache_get(self, cache_key: str, now: datetime) -> Optional[Dict[str, Any]]:
        """Cached payload if present and not expired at ``now``."""

    @abc.abstractmethod
    def cache_put(self, cache_key: str, payload: Dict[str, Any], expires_at: datetime) -> None:
        """Store or replace a cache entry."""

    @abc.abstractmethod
    def cache_purge(self, now: datetime) -> int:
        """Delete expired entries; returns how many were removed."""

    # -- cost aggregates --------------------------------------------------
    @abc.abstractmethod
    def add_cost(self, workspace_id: str, period: str, cost: float,
                 input_tokens: int, output_tokens: int) -> CostEntry:
        """Atomically add one call's spend to the workspace/period aggregate."""

    @abc.abstractmethod
    def get_cost(self, workspace_id: str, period: str) -> CostEntry:
        """Aggregate for a workspace/period (zeros if nothing was spent)."""

    # -- stage queues -----------------------------------------------------
    @abc.abstractmethod
    def enqueue(self, job: StageJob) -> None:
        """Append a job to its stage queue."""

    @abc.abstractmethod
    def dequeue(self, stage: Stage, timeout: float) -> Optional[StageJob]:
        """Claim the next available job of a stage, waiting up to ``timeout`` seconds."""

    @abc.abstractmethod
    def ack(self, job: StageJob) -> None:
        """Remove a finished job."""

    @abc.abstractmethod
    def requeue(self, job: StageJob, delay_seconds: float) -> None:
        """Release a claimed job, available again after ``delay_seconds``."""

    @abc.abstractmethod
    def queue_depth(self, stage: Stage) -> int:
        """Jobs queued or in flight for a stage."""

    # -- manual review / operator queues ---------------------------------
    @abc.abstractmethod
    def add_ticket(self, ticket: OperatorTicket) -> None:
        """File a manual-review or operator ticket."""

    @abc.abstractmethod
    def list_tickets(self, queue: TicketQueue, workspace_id: Optional[str] = None) -> List[OperatorTicket]:
        """Tickets of a queue, oldest first."""

    # -- workspaces -------------------------------------------------------
    @abc.abstractmethod
    def mark_workspace_deleted(self, workspace_id: str) -> None:
        """Record a workspace-deletion event."""

    @abc.abstractmethod
    def is_workspace_deleted(self, workspace_id: str) -> bool:
        """True once the workspace has been deleted."""

    # -- locking ----------------------------------------------------------
    @abc.abstractmethod
    def lock(self, key: str) -> AbstractContextManager:
        """Exclusive lock on ``key`` (e.g. ``cluster:<id>``) for read-modify-write sections."""
