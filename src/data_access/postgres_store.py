# src/data_access/postgres_store.py
"""
PostgreSQL canonical store (pgvector for embeddings).
"""

import json
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, Iterator, List, Optional

from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import ThreadedConnectionPool

from src.config.settings import Settings
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

# Claimed jobs not acked within this window are handed out again.
JOB_VISIBILITY_TIMEOUT = timedelta(minutes=10)


class PostgresStore(CanonicalStore):
    """
    PostgreSQL-backed canonical store.

    Each thread uses at most one pooled connection at a time: store calls made
    while the thread holds ``lock()`` run on the lock's connection, and
    checkouts wait on a semaphore sized to the pool instead of failing when
    every connection is in use.
    """

    def __init__(self, config: Settings):
        self.config = config
        self.pool = None
        self._keyed = KeyedLock()
        self._slots = threading.BoundedSemaphore(config.postgres_pool_size)
        self._local = threading.local()

    def connect(self) -> None:
        """Create the connection pool."""
        self.pool = ThreadedConnectionPool(
            1,
            self.config.postgres_pool_size,
            host=self.config.postgres_host,
            port=self.config.postgres_port,
            database=self.config.postgres_database,
            user=self.config.postgres_username,
            password=self.config.postgres_password,
            sslmode=self.config.postgres_sslmode,
        )

    def close(self) -> None:
        """Close all pooled connections."""
        if self.pool:
            self.pool.closeall()
            self.pool = None

    @contextmanager
    def _connection(self) -> Iterator[Any]:
        """The connection this thread holds under ``lock()``, or a pooled one."""
        held = getattr(self._local, "conn", None)
        if held is not None:
            yield held
            return
        if not self.pool:
            self.connect()
        self._slots.acquire()
        try:
            conn = self.pool.getconn()
            try:
                yield conn
            finally:
                self.pool.putconn(conn)
        finally:
            self._slots.release()

    @contextmanager
    def _cursor(self) -> Iterator[RealDictCursor]:
        """One transaction; commits on success, rolls back on error."""
        with self._connection() as conn:
            with conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cursor:
                    yield cursor

    def initialize_schema(self) -> None:
        """Create tables and indexes if they don't exist."""
        dim = self.config.embedding_dimension
        schema_sql = f"""
        CREATE EXTENSION IF NOT EXISTS vector;

        CREATE TABLE IF NOT EXISTS feedback_items (
            id VARCHAR(64) PRIMARY KEY,
            workspace_id VARCHAR(255) NOT NULL,
            source_system VARCHAR(100) NOT NULL,
            external_id VARCHAR(255) NOT NULL,
            content TEXT NOT NULL,
            author VARCHAR(255),
            created_at TIMESTAMPTZ NOT NULL,
            sentiment DOUBLE PRECISION,
            embedding_id VARCHAR(64),
            embedding_stale BOOLEAN NOT NULL DEFAULT TRUE,
            content_hash VARCHAR(64) NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL,
            UNIQUE (workspace_id, source_system, external_id)
        );

        CREATE TABLE IF NOT EXISTS embeddings (
            feedback_item_id VARCHAR(64) PRIMARY KEY REFERENCES feedback_items(id),
            id VARCHAR(64) NOT NULL,
            vector vector({dim}),
            model VARCHAR(100),
            content_hash VARCHAR(64) NOT NULL,
            computed_at TIMESTAMPTZ NOT NULL
        );

        CREATE TABLE IF NOT EXISTS clusters (
            id VARCHAR(64) PRIMARY KEY,
            workspace_id VARCHAR(255) NOT NULL,
            representative_item_id VARCHAR(64),
            centroid DOUBLE PRECISION[],
            priority_score DOUBLE PRECISION NOT NULL DEFAULT 0,
            priority_bucket VARCHAR(10) NOT NULL DEFAULT 'low',
            failure_reason TEXT,
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL
        );
        CREATE INDEX IF NOT EXISTS clusters_workspace_idx ON clusters(workspace_id);

        CREATE TABLE IF NOT EXISTS cluster_members (
            item_id VARCHAR(64) PRIMARY KEY,
            cluster_id VARCHAR(64) NOT NULL REFERENCES clusters(id),
            embedding_id VARCHAR(64)
        );
        CREATE INDEX IF NOT EXISTS cluster_members_cluster_idx ON cluster_members(cluster_id);

        CREATE TABLE IF NOT EXISTS analysis_results (
            id VARCHAR(64) PRIMARY KEY,
            cluster_id VARCHAR(64),
            tier VARCHAR(10) NOT NULL,
            sentiment DOUBLE PRECISION NOT NULL,
            themes JSONB NOT NULL,
            cache_key VARCHAR(64) NOT NULL,
            cost DOUBLE PRECISION NOT NULL,
            cache_hit BOOLEAN NOT NULL,
            active BOOLEAN NOT NULL,
            computed_at TIMESTAMPTZ NOT NULL
        );
        CREATE INDEX IF NOT EXISTS analysis_cluster_idx ON analysis_results(cluster_id);

        CREATE TABLE IF NOT EXISTS requirements (
            id VARCHAR(64) PRIMARY KEY,
            cluster_id VARCHAR(64) NOT NULL,
            workspace_id VARCHAR(255) NOT NULL,
            title TEXT NOT NULL,
            user_story TEXT NOT NULL,
            acceptance_criteria JSONB NOT NULL,
            priority_score DOUBLE PRECISION NOT NULL,
            priority_bucket VARCHAR(10) NOT NULL,
            source_feedback_ids JSONB NOT NULL,
            status VARCHAR(20) NOT NULL,
            failure_reason TEXT,
            superseded_by VARCHAR(64),
            created_at TIMESTAMPTZ NOT NULL,
            updated_at TIMESTAMPTZ NOT NULL
        );
        CREATE INDEX IF NOT EXISTS requirements_cluster_idx ON requirements(cluster_id);

        CREATE TABLE IF NOT EXISTS sync_records (
            id VARCHAR(64) NOT NULL,
            idempotency_key VARCHAR(64) PRIMARY KEY,
            requirement_id VARCHAR(64) NOT NULL,
            target_system VARCHAR(100) NOT NULL,
            external_ref VARCHAR(255),
            last_attempt_at TIMESTAMPTZ,
            attempt_count INTEGER NOT NULL DEFAULT 0,
            state VARCHAR(20) NOT NULL,
            failure_reason TEXT
        );

        CREATE TABLE IF NOT EXISTS analysis_cache (
            cache_key VARCHAR(64) PRIMARY KEY,
            payload JSONB NOT NULL,
            expires_at TIMESTAMPTZ NOT NULL
        );

        CREATE TABLE IF NOT EXISTS workspace_costs (
            workspace_id VARCHAR(255) NOT NULL,
            period VARCHAR(7) NOT NULL,
            cost DOUBLE PRECISION NOT NULL DEFAULT 0,
            input_tokens BIGINT NOT NULL DEFAULT 0,
            output_tokens BIGINT NOT NULL DEFAULT 0,
            calls BIGINT NOT NULL DEFAULT 0,
            PRIMARY KEY (workspace_id, period)
        );

        CREATE TABLE IF NOT EXISTS stage_jobs (
            id VARCHAR(64) PRIMARY KEY,
            stage VARCHAR(20) NOT NULL,
            workspace_id VARCHAR(255) NOT NULL,
            payload JSONB NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            available_at TIMESTAMPTZ NOT NULL,
            claimed_at TIMESTAMPTZ
        );
        CREATE INDEX IF NOT EXISTS stage_jobs_stage_idx ON stage_jobs(stage, available_at);

        CREATE TABLE IF NOT EXISTS operator_tickets (
            id VARCHAR(64) PRIMARY KEY,
            queue VARCHAR(20) NOT NULL,
            entity_type VARCHAR(50) NOT NULL,
            entity_id VARCHAR(64) NOT NULL,
            workspace_id VARCHAR(255) NOT NULL,
            reason TEXT NOT NULL,
            created_at TIMESTAMPTZ NOT NULL
        );

        CREATE TABLE IF NOT EXISTS deleted_workspaces (
            workspace_id VARCHAR(255) PRIMARY KEY,
            deleted_at TIMESTAMPTZ NOT NULL
        );
        """

        with self._cursor() as cursor:
            cursor.execute(schema_sql)

    # -- feedback items ---------------------------------------------------
    def get_feedback_item(self, item_id: str) -> Optional[FeedbackItem]:
        items = self.get_feedback_items([item_id])
        return items[0] if items else None

    def get_feedback_items(self, item_ids: List[str]) -> List[FeedbackItem]:
        if not item_ids:
            return []
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM feedback_items WHERE id = ANY(%s)", (list(item_ids),))
            return [FeedbackItem(**row) for row in cursor.fetchall()]

    def upsert_feedback_item(self, item: FeedbackItem) -> None:
        query = """
            INSERT INTO feedback_items (id, workspace_id, source_system, external_id, content, author,
                                        created_at, sentiment, embedding_id, embedding_stale,
                                        content_hash, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (workspace_id, source_system, external_id) DO UPDATE
            SET content = EXCLUDED.content,
                author = EXCLUDED.author,
                created_at = EXCLUDED.created_at,
                sentiment = EXCLUDED.sentiment,
                embedding_id = EXCLUDED.embedding_id,
                embedding_stale = EXCLUDED.embedding_stale,
                content_hash = EXCLUDED.content_hash,
                updated_at = EXCLUDED.updated_at
        """
        with self._cursor() as cursor:
            cursor.execute(query, (
                item.id, item.workspace_id, item.source_system, item.external_id, item.content,
                item.author, item.created_at, item.sentiment, item.embedding_id,
                item.embedding_stale, item.content_hash, item.updated_at,
            ))

    # -- embeddings -------------------------------------------------------
    def save_embedding(self, embedding: EmbeddingVector) -> None:
        query = """
            INSERT INTO embeddings (feedback_item_id, id, vector, model, content_hash, computed_at)
            VALUES (%s, %s, %s::vector, %s, %s, %s)
            ON CONFLICT (feedback_item_id) DO UPDATE
            SET id = EXCLUDED.id,
                vector = EXCLUDED.vector,
                model = EXCLUDED.model,
                content_hash = EXCLUDED.content_hash,
                computed_at = EXCLUDED.computed_at
        """
        with self._cursor() as cursor:
            cursor.execute(query, (
                embedding.feedback_item_id, embedding.id, embedding.vector,
                embedding.model, embedding.content_hash, embedding.computed_at,
            ))

    def get_embeddings(self, item_ids: List[str]) -> Dict[str, EmbeddingVector]:
        if not item_ids:
            return {}
        query = """
            SELECT feedback_item_id, id, vector::text AS vector, model, content_hash, computed_at
            FROM embeddings
            WHERE feedback_item_id = ANY(%s)
        """
        with self._cursor() as cursor:
            cursor.execute(query, (list(item_ids),))
            rows = cursor.fetchall()
        return {
            row["feedback_item_id"]: EmbeddingVector(**{**row, "vector": json.loads(row["vector"])})
            for row in rows
        }

    # -- clusters ---------------------------------------------------------
    def save_cluster(self, cluster: Cluster) -> None:
        upsert = """
            INSERT INTO clusters (id, workspace_id, representative_item_id, centroid, priority_score,
                                  priority_bucket, failure_reason, created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE
            SET representative_item_id = EXCLUDED.representative_item_id,
                centroid = EXCLUDED.centroid,
                priority_score = EXCLUDED.priority_score,
                priority_bucket = EXCLUDED.priority_bucket,
                failure_reason = EXCLUDED.failure_reason,
                updated_at = EXCLUDED.updated_at
        """
        members = sorted(cluster.member_item_ids)
        with self._cursor() as cursor:
            cursor.execute(upsert, (
                cluster.id, cluster.workspace_id, cluster.representative_item_id, cluster.centroid,
                cluster.priority_score, cluster.priority_bucket, cluster.failure_reason,
                cluster.created_at, cluster.updated_at,
            ))
            cursor.execute(
                "DELETE FROM cluster_members WHERE cluster_id = %s AND NOT (item_id = ANY(%s::varchar[]))",
                (cluster.id, members),
            )
            for item_id in members:
                cursor.execute(
                    """
                    INSERT INTO cluster_members (item_id, cluster_id, embedding_id) VALUES (%s, %s, %s)
                    ON CONFLICT (item_id) DO UPDATE
                    SET cluster_id = EXCLUDED.cluster_id, embedding_id = EXCLUDED.embedding_id
                    """,
                    (item_id, cluster.id, cluster.member_embedding_ids.get(item_id)),
                )

    def _load_clusters(self, where: str, params: tuple) -> List[Cluster]:
        query = f"""
            SELECT c.*, COALESCE(
                       (SELECT json_agg(m.item_id) FROM cluster_members m WHERE m.cluster_id = c.id),
                       '[]'::json) AS member_item_ids,
                   COALESCE(
                       (SELECT json_object_agg(m.item_id, m.embedding_id) FROM cluster_members m
                        WHERE m.cluster_id = c.id AND m.embedding_id IS NOT NULL),
                       '{{}}'::json) AS member_embedding_ids
            FROM clusters c
            WHERE {where}
            ORDER BY c.created_at
        """
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return [Cluster(**row) for row in cursor.fetchall()]

    def get_cluster(self, cluster_id: str) -> Optional[Cluster]:
        clusters = self._load_clusters("c.id = %s", (cluster_id,))
        return clusters[0] if clusters else None

    def list_clusters(self, workspace_id: str) -> List[Cluster]:
        return self._load_clusters("c.workspace_id = %s", (workspace_id,))

    def find_cluster_for_item(self, item_id: str) -> Optional[Cluster]:
        clusters = self._load_clusters(
            "c.id = (SELECT cluster_id FROM cluster_members WHERE item_id = %s)", (item_id,)
        )
        return clusters[0] if clusters else None

    # -- analysis results -------------------------------------------------
    def save_analysis(self, result: AnalysisResult) -> None:
        with self._cursor() as cursor:
            if result.cluster_id:
                cursor.execute(
                    "UPDATE analysis_results SET active = FALSE WHERE cluster_id = %s AND active",
                    (result.cluster_id,),
                )
            cursor.execute(
                """
                INSERT INTO analysis_results (id, cluster_id, tier, sentiment, themes, cache_key,
                                              cost, cache_hit, active, computed_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, TRUE, %s)
                """,
                (
                    result.id, result.cluster_id, result.tier, result.sentiment,
                    Json(sorted(result.themes)), result.cache_key, result.cost,
                    result.cache_hit, result.computed_at,
                ),
            )

    def get_active_analysis(self, cluster_id: str) -> Optional[AnalysisResult]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM analysis_results WHERE cluster_id = %s AND active "
                "ORDER BY computed_at DESC LIMIT 1",
                (cluster_id,),
            )
            row = cursor.fetchone()
            return AnalysisResult(**row) if row else None

    def list_analysis(self, cluster_id: str) -> List[AnalysisResult]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM analysis_results WHERE cluster_id = %s ORDER BY computed_at",
                (cluster_id,),
            )
            return [AnalysisResult(**row) for row in cursor.fetchall()]

    # -- requirements -----------------------------------------------------
    def save_requirement(self, requirement: Requirement) -> None:
        query = """
            INSERT INTO requirements (id, cluster_id, workspace_id, title, user_story,
                                      acceptance_criteria, priority_score, priority_bucket,
                                      source_feedback_ids, status, failure_reason, superseded_by,
                                      created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (id) DO UPDATE
            SET title = EXCLUDED.title,
                user_story = EXCLUDED.user_story,
                acceptance_criteria = EXCLUDED.acceptance_criteria,
                priority_score = EXCLUDED.priority_score,
                priority_bucket = EXCLUDED.priority_bucket,
                source_feedback_ids = EXCLUDED.source_feedback_ids,
                status = EXCLUDED.status,
                failure_reason = EXCLUDED.failure_reason,
                superseded_by = EXCLUDED.superseded_by,
                updated_at = EXCLUDED.updated_at
        """
        r = requirement
        with self._cursor() as cursor:
            cursor.execute(query, (
                r.id, r.cluster_id, r.workspace_id, r.title, r.user_story,
                Json(list(r.acceptance_criteria)), r.priority_score, r.priority_bucket,
                Json(sorted(r.source_feedback_ids)), r.status, r.failure_reason, r.superseded_by,
                r.created_at, r.updated_at,
            ))

    def get_requirement(self, requirement_id: str) -> Optional[Requirement]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM requirements WHERE id = %s", (requirement_id,))
            row = cursor.fetchone()
            return Requirement(**row) if row else None

    def get_current_requirement(self, cluster_id: str) -> Optional[Requirement]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM requirements WHERE cluster_id = %s AND superseded_by IS NULL "
                "ORDER BY created_at DESC LIMIT 1",
                (cluster_id,),
            )
            row = cursor.fetchone()
            return Requirement(**row) if row else None

    def list_requirements(self, workspace_id: str, status: Optional[str] = None) -> List[Requirement]:
        query = "SELECT * FROM requirements WHERE workspace_id = %s"
        params = [workspace_id]
        if status:
            query += " AND status = %s"
            params.append(status)
        query += " ORDER BY created_at"
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return [Requirement(**row) for row in cursor.fetchall()]

    # -- sync records -----------------------------------------------------
    def get_sync_record(self, idempotency_key: str) -> Optional[SyncRecord]:
        with self._cursor() as cursor:
            cursor.execute("SELECT * FROM sync_records WHERE idempotency_key = %s", (idempotency_key,))
            row = cursor.fetchone()
            return SyncRecord(**row) if row else None

    def save_sync_record(self, record: SyncRecord) -> None:
        query = """
            INSERT INTO sync_records (id, idempotency_key, requirement_id, target_system, external_ref,
                                      last_attempt_at, attempt_count, state, failure_reason)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (idempotency_key) DO UPDATE
            SET external_ref = EXCLUDED.external_ref,
                last_attempt_at = EXCLUDED.last_attempt_at,
                attempt_count = EXCLUDED.attempt_count,
                state = EXCLUDED.state,
                failure_reason = EXCLUDED.failure_reason
            WHERE sync_records.state <> 'succeeded'
        """
        with self._cursor() as cursor:
            cursor.execute(query, (
                record.id, record.idempotency_key, record.requirement_id, record.target_system,
                record.external_ref, record.last_attempt_at, record.attempt_count, record.state,
                record.failure_reason,
            ))

    def list_sync_records(self, state: Optional[str] = None) -> List[SyncRecord]:
        query = "SELECT * FROM sync_records"
        params = []
        if state:
            query += " WHERE state = %s"
            params.append(state)
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return [SyncRecord(**row) for row in cursor.fetchall()]

    # -- analysis cache ---------------------------------------------------
    def cache_get(self, cache_key: str, now: datetime) -> Optional[Dict[str, Any]]:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT payload FROM analysis_cache WHERE cache_key = %s AND expires_at > %s",
                (cache_key, now),
            )
            row = cursor.fetchone()
            return row["payload"] if row else None

    def cache_put(self, cache_key: str, payload: Dict[str, Any], expires_at: datetime) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO analysis_cache (cache_key, payload, expires_at) VALUES (%s, %s, %s)
                ON CONFLICT (cache_key) DO UPDATE
                SET payload = EXCLUDED.payload, expires_at = EXCLUDED.expires_at
                """,
                (cache_key, Json(payload), expires_at),
            )

    def cache_purge(self, now: datetime) -> int:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM analysis_cache WHERE expires_at <= %s", (now,))
            return cursor.rowcount

    # -- cost aggregates --------------------------------------------------
    def add_cost(self, workspace_id: str, period: str, cost: float,
                 input_tokens: int, output_tokens: int) -> CostEntry:
        query = """
            INSERT INTO workspace_costs (workspace_id, period, cost, input_tokens, output_tokens, calls)
            VALUES (%s, %s, %s, %s, %s, 1)
            ON CONFLICT (workspace_id, period) DO UPDATE
            SET cost = workspace_costs.cost + EXCLUDED.cost,
                input_tokens = workspace_costs.input_tokens + EXCLUDED.input_tokens,
                output_tokens = workspace_costs.output_tokens + EXCLUDED.output_tokens,
                calls = workspace_costs.calls + 1
            RETURNING *
        """
        with self._cursor() as cursor:
            cursor.execute(query, (workspace_id, period, cost, input_tokens, output_tokens))
            return CostEntry(**cursor.fetchone())

    def get_cost(self, workspace_id: str, period: str) -> CostEntry:
        with self._cursor() as cursor:
            cursor.execute(
                "SELECT * FROM workspace_costs WHERE workspace_id = %s AND period = %s",
                (workspace_id, period),
            )
            row = cursor.fetchone()
        if row is None:
            return CostEntry(workspace_id=workspace_id, period=period)
        return CostEntry(**row)

    # -- stage queues -----------------------------------------------------
    def enqueue(self, job: StageJob) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO stage_jobs (id, stage, workspace_id, payload, attempts, available_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (job.id, job.stage, job.workspace_id, Json(job.payload), job.attempts, job.available_at),
            )

    def _claim(self, stage: Stage) -> Optional[StageJob]:
        query = """
            UPDATE stage_jobs SET claimed_at = %s
            WHERE id = (
                SELECT id FROM stage_jobs
                WHERE stage = %s AND available_at <= %s
                  AND (claimed_at IS NULL OR claimed_at < %s)
                ORDER BY available_at
                FOR UPDATE SKIP LOCKED
                LIMIT 1
            )
            RETURNING id, stage, workspace_id, payload, attempts, available_at
        """
        now = utcnow()
        with self._cursor() as cursor:
            cursor.execute(query, (now, Stage(stage).value, now, now - JOB_VISIBILITY_TIMEOUT))
            row = cursor.fetchone()
            return StageJob(**row) if row else None

    def dequeue(self, stage: Stage, timeout: float) -> Optional[StageJob]:
        deadline = utcnow() + timedelta(seconds=timeout)
        poll = min(self.config.queue_poll_seconds, max(timeout, 0.0))
        while True:
            job = self._claim(stage)
            if job is not None or utcnow() >= deadline:
                return job
            time.sleep(poll)

    def ack(self, job: StageJob) -> None:
        with self._cursor() as cursor:
            cursor.execute("DELETE FROM stage_jobs WHERE id = %s", (job.id,))

    def requeue(self, job: StageJob, delay_seconds: float) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "UPDATE stage_jobs SET claimed_at = NULL, attempts = %s, available_at = %s WHERE id = %s",
                (job.attempts, utcnow() + timedelta(seconds=delay_seconds), job.id),
            )

    def queue_depth(self, stage: Stage) -> int:
        with self._cursor() as cursor:
            cursor.execute("SELECT COUNT(*) AS depth FROM stage_jobs WHERE stage = %s", (Stage(stage).value,))
            return cursor.fetchone()["depth"]

    # -- manual review / operator queues ---------------------------------
    def add_ticket(self, ticket: OperatorTicket) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO operator_tickets (id, queue, entity_type, entity_id, workspace_id, reason, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (ticket.id, ticket.queue, ticket.entity_type, ticket.entity_id,
                 ticket.workspace_id, ticket.reason, ticket.created_at),
            )

    def list_tickets(self, queue: TicketQueue, workspace_id: Optional[str] = None) -> List[OperatorTicket]:
        query = "SELECT * FROM operator_tickets WHERE queue = %s"
        params = [TicketQueue(queue).value]
        if workspace_id:
            query += " AND workspace_id = %s"
            params.append(workspace_id)
        query += " ORDER BY created_at"
        with self._cursor() as cursor:
            cursor.execute(query, params)
            return [OperatorTicket(**row) for row in cursor.fetchall()]

    # -- workspaces -------------------------------------------------------
    def mark_workspace_deleted(self, workspace_id: str) -> None:
        with self._cursor() as cursor:
            cursor.execute(
                "INSERT INTO deleted_workspaces (workspace_id, deleted_at) VALUES (%s, %s) "
                "ON CONFLICT (workspace_id) DO NOTHING",
                (workspace_id, utcnow()),
            )

    def is_workspace_deleted(self, workspace_id: str) -> bool:
        with self._cursor() as cursor:
            cursor.execute("SELECT 1 FROM deleted_workspaces WHERE workspace_id = %s", (workspace_id,))
            return cursor.fetchone() is not None

    # -- locking ----------------------------------------------------------
    @contextmanager
    def lock(self, key: str) -> Iterator[None]:
        """In-process keyed lock plus a session advisory lock for other processes."""
        with self._keyed.hold(key):
            with self._connection() as conn:
                outermost = getattr(self._local, "conn", None) is None
                with conn.cursor() as cursor:
                    cursor.execute("SELECT pg_advisory_lock(hashtext(%s))", (key,))
                conn.commit()
                if outermost:
                    self._local.conn = conn
                try:
                    yield
                finally:
                    if outermost:
                        self._local.conn = None
                    with conn.cursor() as cursor:
                        cursor.execute("SELECT pg_advisory_unlock(hashtext(%s))", (key,))
                    conn.commit()
