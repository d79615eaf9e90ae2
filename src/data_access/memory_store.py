# src/data_access/memory_store.py
"""
Thread-safe in-process canonical store.

Used for single-process runs and tests. Every read returns a deep copy so
callers never share mutable state with the store or with each other.
"""

import threading
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple
import copy

from src.data_access.store import CanonicalStore
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
    utcnow,
)
from src.resilience.locks import KeyedLock


class InMemoryStore(CanonicalStore):
    """Canonical store kept in process memory."""

    def __init__(self):
        self._lock = threading.RLock()
        self._queue_cond = threading.Condition(self._lock)
        self._keyed = KeyedLock()

        self._items: Dict[str, FeedbackItem] = {}
        self._item_keys: Dict[Tuple[str, str, str], str] = {}
        self._embeddings: Dict[str, EmbeddingVector] = {}
        self._clusters: Dict[str, Cluster] = {}
        self._membership: Dict[str, str] = {}
        self._analysis: Dict[str, List[AnalysisResult]] = {}
        self._requirements: Dict[str, Requirement] = {}
        self._sync: Dict[str, SyncRecord] = {}
        self._cache: Dict[str, Tuple[Dict[str, Any], datetime]] = {}
        self._costs: Dict[Tuple[str, str], CostEntry] = {}
        self._jobs: Dict[str, List[StageJob]] = {stage.value: [] for stage in Stage}
        self._in_flight: Dict[str, StageJob] = {}
        self._tickets: List[OperatorTicket] = []
        self._deleted_workspaces: set = set()

    # -- feedback items ---------------------------------------------------
    def get_feedback_item(self, item_id: str) -> Optional[FeedbackItem]:
        with self._lock:
            item = self._items.get(item_id)
            return item.model_copy(deep=True) if item else None

    def get_feedback_items(self, item_ids: List[str]) -> List[FeedbackItem]:
        with self._lock:
            return [self._items[i].model_copy(deep=True) for i in item_ids if i in self._items]

    def upsert_feedback_item(self, item: FeedbackItem) -> None:
        key = (item.workspace_id, item.source_system, item.external_id)
        with self._lock:
            existing_id = self._item_keys.get(key)
            stored = item.model_copy(deep=True)
            if existing_id is not None and existing_id != item.id:
                stored.id = existing_id
            self._items[stored.id] = stored
            self._item_keys[key] = stored.id

    # -- embeddings -------------------------------------------------------
    def save_embedding(self, embedding: EmbeddingVector) -> None:
        with self._lock:
            self._embeddings[embedding.feedback_item_id] = embedding.model_copy(deep=True)

    def get_embeddings(self, item_ids: List[str]) -> Dict[str, EmbeddingVector]:
        with self._lock:
            return {
                i: self._embeddings[i].model_copy(deep=True)
                for i in item_ids if i in self._embeddings
            }

    # -- clusters ---------------------------------------------------------
    def save_cluster(self, cluster: Cluster) -> None:
        with self._lock:
            previous = self._clusters.get(cluster.id)
            if previous is not None:
                for item_id in previous.member_item_ids - cluster.member_item_ids:
                    if self._membership.get(item_id) == cluster.id:
                        del self._membership[item_id]
            for item_id in cluster.member_item_ids:
                old_cluster_id = self._membership.get(item_id)
                if old_cluster_id and old_cluster_id != cluster.id:
                    old = self._clusters[old_cluster_id]
                    old.member_item_ids.discard(item_id)
                    old.member_embedding_ids.pop(item_id, None)
                self._membership[item_id] = cluster.id
            self._clusters[cluster.id] = cluster.model_copy(deep=True)

    def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        with self._lock:
            cluster = self._clusters.get(cluster_id)
            return cluster.model_copy(deep=True) if cluster else None

    def list_clusters(self, workspace_id: str) -> List[Cluster]:
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in sorted(self._clusters.values(), key=lambda c: c.created_at)
                if c.workspace_id == workspace_id
            ]

    def find_cluster_for_item(self, item_id: str) -> Optional[Cluster]:
        with self._lock:
            cluster_id = self._membership.get(item_id)
            return self.get_cluster(cluster_id) if cluster_id else None

    # -- analysis results -------------------------------------------------
    def save_analysis(self, result: AnalysisResult) -> None:
        key = result.cluster_id or ""
        with self._lock:
            history = self._analysis.setdefault(key, [])
            for previous in history:
                previous.active = False
            stored = result.model_copy(deep=True)
            stored.active = True
            history.append(stored)

    def get_active_analysis(self, cluster_id: str) -> Optional[AnalysisResult]:
        with self._lock:
            for result in reversed(self._analysis.get(cluster_id, [])):
                if result.active:
                    return result.model_copy(deep=True)
            return None

    def list_analysis(self, cluster_id: str) -> List[AnalysisResult]:
        with self._lock:
            return [r.model_copy(deep=True) for r in self._analysis.get(cluster_id, [])]

    # -- requirements -----------------------------------------------------
    def save_requirement(self, requirement: Requirement) -> None:
        with self._lock:
            self._requirements[requirement.id] = requirement.model_copy(deep=True)

    def get_requirement(self, requirement_id: str) -> Optional[Requirement]:
        with self._lock:
            requirement = self._requirements.get(requirement_id)
            return requirement.model_copy(deep=True) if requirement else None

    def get_current_requirement(self, cluster_id: str) -> Optional[Requirement]:
        with self._lock:
            candidates = [
                r for r in self._requirements.values()
                if r.cluster_id == cluster_id and r.superseded_by is None
            ]
            if not candidates:
                return None
            return max(candidates, key=lambda r: r.created_at).model_copy(deep=True)

    def list_requirements(self, workspace_id: str, status: Optional[str] = None) -> List[Requirement]:
        with self._lock:
            return [
                r.model_copy(deep=True)
                for r in sorted(self._requirements.values(), key=lambda r: r.created_at)
                if r.workspace_id == workspace_id and (status is None or r.status == status)
            ]

    # -- sync records -----------------------------------------------------
    def get_sync_record(self, idempotency_key: str) -> Optional[SyncRecord]:
        with self._lock:
            record = self._sync.get(idempotency_key)
            return record.model_copy(deep=True) if record else None

    def save_sync_record(self, record: SyncRecord) -> None:
        with self._lock:
            existing = self._sync.get(record.idempotency_key)
            stored = record.model_copy(deep=True)
            if existing is not None:
                stored.id = existing.id
            self._sync[record.idempotency_key] = stored

    def list_sync_records(self, state: Optional[str] = None) -> List[SyncRecord]:
        with self._lock:
            return [
                r.model_copy(deep=True) for r in self._sync.values()
                if state is None or r.state == state
            ]

    # -- analysis cache ---------------------------------------------------
    def cache_get(self, cache_key: str, now: datetime) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._cache.get(cache_key)
            if entry is None:
                return None
            payload, expires_at = entry
            if expires_at <= now:
                return None
            return copy.deepcopy(payload)

    def cache_put(self, cache_key: str, payload: Dict[str, Any], expires_at: datetime) -> None:
        with self._lock:
            self._cache[cache_key] = (copy.deepcopy(payload), expires_at)

    def cache_purge(self, now: datetime) -> int:
        with self._lock:
            expired = [k for k, (_, expires_at) in self._cache.items() if expires_at <= now]
            for key in expired:
                del self._cache[key]
            return len(expired)

    # -- cost aggregates --------------------------------------------------
    def add_cost(self, workspace_id: str, period: str, cost: float,
                 input_tokens: int, output_tokens: int) -> CostEntry:
        with self._lock:
            entry = self._costs.setdefault(
                (workspace_id, period), CostEntry(workspace_id=workspace_id, period=period)
            )
            entry.cost += cost
            entry.input_tokens += input_tokens
            entry.output_tokens += output_tokens
            entry.calls += 1
            return entry.model_copy()

    def get_cost(self, workspace_id: str, period: str) -> CostEntry:
        with self._lock:
            entry = self._costs.get((workspace_id, period))
            if entry is None:
                return CostEntry(workspace_id=workspace_id, period=period)
            return entry.model_copy()

    # -- stage queues -----------------------------------------------------
    def enqueue(self, job: StageJob) -> None:
        with self._queue_cond:
            self._jobs[Stage(job.stage).value].append(job.model_copy(deep=True))
            self._queue_cond.notify_all()

    def dequeue(self, stage: Stage, timeout: float) -> Optional[StageJob]:
        deadline = utcnow() + timedelta(seconds=timeout)
        with self._queue_cond:
            while True:
                now = utcnow()
                jobs = self._jobs[Stage(stage).value]
                ready = [j for j in jobs if j.available_at <= now]
                if ready:
                    job = min(ready, key=lambda j: j.available_at)
                    jobs.remove(job)
                    self._in_flight[job.id] = job
                    return job.model_copy(deep=True)
                remaining = (deadline - now).total_seconds()
                if remaining <= 0:
                    return None
                upcoming = [(j.available_at - now).total_seconds() for j in jobs]
                self._queue_cond.wait(timeout=min([remaining] + upcoming))

    def ack(self, job: StageJob) -> None:
        with self._queue_cond:
            self._in_flight.pop(job.id, None)

    def requeue(self, job: StageJob, delay_seconds: float) -> None:
        with self._queue_cond:
            self._in_flight.pop(job.id, None)
            released = job.model_copy(deep=True)
            released.available_at = utcnow() + timedelta(seconds=delay_seconds)
            self._jobs[Stage(job.stage).value].append(released)
            self._queue_cond.notify_all()

    def queue_depth(self, stage: Stage) -> int:
        with self._queue_cond:
            in_flight = sum(1 for j in self._in_flight.values() if j.stage == Stage(stage).value)
            return len(self._jobs[Stage(stage).value]) + in_flight

    # -- manual review / operator queues ---------------------------------
    def add_ticket(self, ticket: OperatorTicket) -> None:
        with self._lock:
            self._tickets.append(ticket.model_copy(deep=True))

    def list_tickets(self, queue: TicketQueue, workspace_id: Optional[str] = None) -> List[OperatorTicket]:
        with self._lock:
            return [
                t.model_copy(deep=True) for t in self._tickets
                if t.queue == TicketQueue(queue).value
                and (workspace_id is None or t.workspace_id == workspace_id)
            ]

    # -- workspaces -------------------------------------------------------
    def mark_workspace_deleted(self, workspace_id: str) -> None:
        with self._queue_cond:
            self._deleted_workspaces.add(workspace_id)
            self._queue_cond.notify_all()

    def is_workspace_deleted(self, workspace_id: str) -> bool:
        with self._lock:
            return workspace_id in self._deleted_workspaces

    # -- locking ----------------------------------------------------------
    def lock(self, key: str):
        return self._keyed.hold(key)
