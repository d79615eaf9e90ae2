# src/orchestrator/workers.py
"""
Stage workers.

Each stage (ingestion -> embedding -> dedup -> analysis -> synthesis -> sync)
pulls jobs from its queue in the canonical store. Messages carry entity ids
only; handlers reload state from the store. Retryable failures are requeued
with exponential backoff up to ``job_max_attempts``; after that, and for
non-retryable failures, the reason is persisted on the owning entity and an
operator ticket is filed. A deleted workspace drops its jobs at the next
stage boundary.
"""

import logging
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, Future
from typing import Callable, Dict, List, Optional

from src.agents.router import LLMRouter
from src.config.settings import Settings
from src.data_access.store import CanonicalStore
from src.embedding.embedder import EmbeddingService
from src.models.errors import JobCancelledError, PipelineError
from src.models.schemas import (
    OperatorTicket,
    RequirementStatus,
    Stage,
    StageJob,
    TicketQueue,
    utcnow,
)
from src.pipelines.analysis import ClusterAnalyzer
from src.pipelines.dedup import DeduplicationEngine
from src.pipelines.ingest import IngestionPipeline
from src.pipelines.synthesis import RequirementSynthesizer
from src.resilience.rate_limiter import RateLimiterRegistry
from src.resilience.retry import backoff_delay
from src.sync.dispatcher import SyncDispatcher

logger = logging.getLogger(__name__)

STAGE_ORDER = [Stage.INGESTION, Stage.EMBEDDING, Stage.DEDUP, Stage.ANALYSIS, Stage.SYNTHESIS, Stage.SYNC]


class PipelineOrchestrator:
    """Runs the stage handlers over the store's job queues."""

    def __init__(
        self,
        config: Settings,
        store: CanonicalStore,
        ingestion: Optional[IngestionPipeline] = None,
        embedding: Optional[EmbeddingService] = None,
        dedup: Optional[DeduplicationEngine] = None,
        analyzer: Optional[ClusterAnalyzer] = None,
        synthesizer: Optional[RequirementSynthesizer] = None,
        dispatcher: Optional[SyncDispatcher] = None,
        rate_limiters: Optional[RateLimiterRegistry] = None,
    ):
        """
        Initialize the orchestrator. Components not supplied are built from
        ``config`` and share one set of rate limiters.
        """
        self.config = config
        self.store = store
        self.rate_limiters = rate_limiters or RateLimiterRegistry(config)
        self.ingestion = ingestion or IngestionPipeline(config, store, self.rate_limiters)
        self.embedding = embedding or EmbeddingService(config, store, rate_limiters=self.rate_limiters)
        self.dedup = dedup or DeduplicationEngine(config, store)
        if synthesizer is None:
            router = LLMRouter(config, store, rate_limiters=self.rate_limiters)
            analyzer = analyzer or ClusterAnalyzer(config, store, router)
            synthesizer = RequirementSynthesizer(config, store, router=router, analyzer=analyzer)
        self.analyzer = analyzer or synthesizer.analyzer
        self.synthesizer = synthesizer
        self.dispatcher = dispatcher or SyncDispatcher(config, store, rate_limiters=self.rate_limiters)

        self.handlers: Dict[str, Callable[[StageJob], None]] = {
            Stage.INGESTION.value: self._handle_ingestion,
            Stage.EMBEDDING.value: self._handle_embedding,
            Stage.DEDUP.value: self._handle_dedup,
            Stage.ANALYSIS.value: self._handle_analysis,
            Stage.SYNTHESIS.value: self._handle_synthesis,
            Stage.SYNC.value: self._handle_sync,
        }
        self.stats: Counter = Counter()
        self._stats_lock = threading.Lock()
        self._stop = threading.Event()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._futures: List[Future] = []

    # -- stage handlers ---------------------------------------------------
    def _handle_ingestion(self, job: StageJob) -> None:
        self.ingestion.process_job(job)

    def _handle_embedding(self, job: StageJob) -> None:
        item_id = job.payload["item_id"]
        if self.embedding.ensure_embedding(item_id) is not None:
            self._next(job, Stage.DEDUP, {"item_id": item_id})

    def _handle_dedup(self, job: StageJob) -> None:
        outcome = self.dedup.place_item(job.payload["item_id"])
        if outcome.changed:
            self._next(job, Stage.ANALYSIS, {"cluster_id": outcome.cluster.id})

    def _handle_analysis(self, job: StageJob) -> None:
        cluster_id = job.payload["cluster_id"]
        if self.analyzer.analyze_cluster(cluster_id) is not None:
            self._next(job, Stage.SYNTHESIS, {"cluster_id": cluster_id})

    def _handle_synthesis(self, job: StageJob) -> None:
        requirement = self.synthesizer.synthesize_cluster(job.payload["cluster_id"])
        if requirement.status == RequirementStatus.SYNTHESIZED:
            for target in self.config.sync_targets:
                self._next(job, Stage.SYNC, {"requirement_id": requirement.id, "target_system": target})

    def _handle_sync(self, job: StageJob) -> None:
        self.dispatcher.dispatch(job.payload["requirement_id"], job.payload["target_system"])

    def _next(self, job: StageJob, stage: Stage, payload: dict) -> None:
        self.store.enqueue(StageJob(stage=stage, workspace_id=job.workspace_id, payload=payload))

    # -- job processing ---------------------------------------------------
    def handle(self, job: StageJob) -> str:
        """
        Run one job through its stage handler and settle it in the queue.

        Returns:
            Outcome label: done, cancelled, requeued or failed
        """
        handler = self.handlers[job.stage]
        try:
            if self.store.is_workspace_deleted(job.workspace_id):
                raise JobCancelledError(f"Workspace {job.workspace_id} was deleted")
            handler(job)
        except JobCancelledError as e:
            logger.info(f"Dropped {job.stage} job {job.id}: {e}")
            self.store.ack(job)
            return self._count(job, "cancelled")
        except PipelineError as e:
            if e.retryable and job.attempts + 1 < self.config.job_max_attempts:
                delay = backoff_delay(job.attempts, self.config.retry_base_delay)
                job.attempts += 1
                logger.warning(
                    f"{job.stage} job {job.id} failed ({e}); requeued in {delay}s "
                    f"(attempt {job.attempts}/{self.config.job_max_attempts})"
                )
                self.store.requeue(job, delay)
                return self._count(job, "requeued")
            self._record_failure(job, e)
            self.store.ack(job)
            return self._count(job, "failed")
        except Exception as e:
            logger.exception(f"Unexpected error in {job.stage} job {job.id}")
            self._record_failure(job, e)
            self.store.ack(job)
            return self._count(job, "failed")

        self.store.ack(job)
        return self._count(job, "done")

    def _record_failure(self, job: StageJob, error: Exception) -> None:
        """Persist the failure on the owning entity and file an operator ticket."""
        reason = f"{type(error).__name__}: {error}"
        entity_type, entity_id = "job", job.id

        if "cluster_id" in job.payload:
            entity_type, entity_id = "cluster", job.payload["cluster_id"]
            with self.store.lock(f"cluster:{entity_id}"):
                cluster = self.store.get_cluster(entity_id)
                if cluster is not None:
                    cluster.failure_reason = reason
                    cluster.updated_at = utcnow()
                    self.store.save_cluster(cluster)
        elif "requirement_id" in job.payload:
            entity_type, entity_id = "requirement", job.payload["requirement_id"]
            requirement = self.store.get_requirement(entity_id)
            if requirement is not None:
                requirement.failure_reason = reason
                requirement.updated_at = utcnow()
                self.store.save_requirement(requirement)
        elif "item_id" in job.payload:
            entity_type, entity_id = "feedback_item", job.payload["item_id"]

        self.store.add_ticket(OperatorTicket(
            queue=TicketQueue.OPERATOR,
            entity_type=entity_type,
            entity_id=entity_id,
            workspace_id=job.workspace_id,
            reason=f"{job.stage} stage: {reason}",
        ))
        logger.error(f"{job.stage} job {job.id} failed permanently for {entity_type} {entity_id}: {reason}")

    def _count(self, job: StageJob, outcome: str) -> str:
        with self._stats_lock:
            self.stats[f"{job.stage}.{outcome}"] += 1
        return outcome

    # -- running ----------------------------------------------------------
    def run_once(self, stage: Stage, timeout: float = 0.0) -> bool:
        """Process one job of ``stage`` if one is available."""
        job = self.store.dequeue(stage, timeout)
        if job is None:
            return False
        self.handle(job)
        return True

    def drain(self, max_jobs: Optional[int] = None) -> int:
        """
        Process queued jobs in stage order on the calling thread until every
        queue is empty (requeued jobs included once they become available).

        Returns:
            Number of jobs processed
        """
        processed = 0
        while max_jobs is None or processed < max_jobs:
            progressed = False
            for stage in STAGE_ORDER:
                while self.run_once(stage):
                    processed += 1
                    progressed = True
                    if max_jobs is not None and processed >= max_jobs:
                        return processed
            if not progressed:
                if not any(self.store.queue_depth(stage) for stage in STAGE_ORDER):
                    break
                # Only delayed retries remain
                time.sleep(self.config.queue_poll_seconds)
        return processed

    def start(self, workers_per_stage: Optional[int] = None) -> None:
        """Start a worker pool per stage on background threads."""
        workers = workers_per_stage or self.config.max_workers
        self._stop.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=workers * len(STAGE_ORDER), thread_name_prefix="stage-worker"
        )
        for stage in STAGE_ORDER:
            for _ in range(workers):
                self._futures.append(self._executor.submit(self._worker_loop, stage))
        logger.info(f"Started {workers} workers for each of {len(STAGE_ORDER)} stages")

    def _worker_loop(self, stage: Stage) -> None:
        while not self._stop.is_set():
            try:
                self.run_once(stage, timeout=self.config.queue_poll_seconds)
            except Exception:
                # Store unavailable; the claimed job (if any) is handed out again
                logger.exception(f"{stage.value} worker could not poll its queue")
                self._stop.wait(self.config.queue_poll_seconds)

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            for future in self._futures:
                if future.done() and future.exception() is not None:
                    logger.error(f"Stage worker exited with error: {future.exception()}")
            self._executor = None
            self._futures = []
        logger.info("Stage workers stopped")

    def idle(self) -> bool:
        return not any(self.store.queue_depth(stage) for stage in STAGE_ORDER)

    def maintenance(self) -> int:
        """Periodic housekeeping: drop expired cache entries."""
        return self.synthesizer.router.cache.purge_expired()
