"""
Ingestion pipeline: pulls raw feedback from a source (or accepts webhook
deliveries), normalizes it into canonical feedback items and hands changed
items to the embedding stage.
"""

from typing import Optional, Tuple
from dataclasses import dataclass
from datetime import datetime, timezone
import hashlib
import logging
import argparse
import re

from src.config.settings import Settings
from src.data_access.store import CanonicalStore
from src.models.errors import FatalConfigError, ValidationError
from src.models.schemas import (
    FeedbackItem,
    RawFeedback,
    Stage,
    StageJob,
    feedback_item_id,
    utcnow,
)
from src.resilience.rate_limiter import RateLimiterRegistry
from src.sources.base import FeedbackSource


logger = logging.getLogger(__name__)

# C0/C1 control characters except tab and newline
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")
HORIZONTAL_SPACE = re.compile(r"[ \t]+")
BLANK_LINES = re.compile(r"\n{3,}")


def clean_content(text: Optional[str], max_length: int) -> str:
    """Strip control characters, collapse whitespace and truncate to ``max_length``."""
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = CONTROL_CHARS.sub("", text)
    text = HORIZONTAL_SPACE.sub(" ", text)
    text = BLANK_LINES.sub("\n\n", text)
    text = "\n".join(line.strip() for line in text.split("\n")).strip()
    return text[:max_length].rstrip()


def normalize_rating(rating: Optional[float], scale: Tuple[float, float]) -> Optional[float]:
    """Map a rating on ``scale`` (low, high) linearly onto [-1, 1], clamped."""
    if rating is None:
        return None
    low, high = scale
    if high <= low:
        raise FatalConfigError(f"Invalid rating scale {scale}")
    value = 2.0 * (float(rating) - low) / (high - low) - 1.0
    return max(-1.0, min(1.0, value))


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def as_utc(moment: datetime) -> datetime:
    """Timezone-aware UTC; naive values (SQL Server DATETIME, offset-less ISO strings) are taken as UTC."""
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


@dataclass
class IngestOutcome:
    item: FeedbackItem
    created: bool
    changed: bool


class IngestionNormalizer:
    """Converts raw per-source payloads into canonical feedback items."""

    def __init__(self, config: Settings, store: CanonicalStore):
        self.config = config
        self.store = store

    def rating_scale(self, source_system: str) -> Tuple[float, float]:
        return tuple(self.config.rating_scales.get(source_system, self.config.default_rating_scale))

    def normalize(self, raw: RawFeedback, source_system: str, workspace_id: str) -> FeedbackItem:
        """
        Validate and clean a raw record.

        Raises:
            ValidationError: Missing externalId or empty content. The payload
                must be rejected, not retried.
        """
        external_id = (raw.external_id or "").strip()
        if not external_id:
            raise ValidationError(f"Feedback from {source_system} is missing externalId")

        content = clean_content(raw.content, self.config.max_content_length)
        if not content:
            raise ValidationError(f"Feedback {source_system}/{external_id} has empty content")

        return FeedbackItem(
            id=feedback_item_id(workspace_id, source_system, external_id),
            workspace_id=workspace_id,
            source_system=source_system,
            external_id=external_id,
            content=content,
            author=(raw.author or "").strip() or None,
            created_at=as_utc(raw.created_at),
            sentiment=normalize_rating(raw.rating, self.rating_scale(source_system)),
            content_hash=content_hash(content),
            embedding_stale=True,
            updated_at=utcnow(),
        )

    def ingest(self, raw: RawFeedback, source_system: str, workspace_id: str) -> IngestOutcome:
        """
        Upsert a raw record by (sourceSystem, externalId).

        Unchanged content is a no-op. New or changed content is stored with a
        stale embedding and an embedding job is enqueued.
        """
        candidate = self.normalize(raw, source_system, workspace_id)

        with self.store.lock(f"item:{candidate.id}"):
            existing = self.store.get_feedback_item(candidate.id)
            if existing is not None and existing.content_hash == candidate.content_hash:
                return IngestOutcome(item=existing, created=False, changed=False)

            if existing is not None:
                candidate.embedding_id = existing.embedding_id
            self.store.upsert_feedback_item(candidate)

        self.store.enqueue(StageJob(
            stage=Stage.EMBEDDING,
            workspace_id=workspace_id,
            payload={"item_id": candidate.id},
        ))
        if existing is None:
            logger.debug(f"Ingested new item {candidate.id} ({source_system}/{candidate.external_id})")
        else:
            logger.info(f"Content changed for item {candidate.id}; embedding marked stale")
        return IngestOutcome(item=candidate, created=existing is None, changed=existing is not None)


class IngestionPipeline:
    """Pipeline for ingesting feedback from a source into the canonical store."""

    def __init__(
        self,
        config: Settings,
        store: CanonicalStore,
        rate_limiters: Optional[RateLimiterRegistry] = None,
    ):
        """
        Initialize the ingestion pipeline.

        Args:
            config: Application settings
            store: Canonical store
            rate_limiters: Token buckets shared with the other stages
        """
        self.config = config
        self.store = store
        self.normalizer = IngestionNormalizer(config, store)
        self.rate_limiters = rate_limiters or RateLimiterRegistry(config)

    def run(
        self,
        source: FeedbackSource,
        workspace_id: str,
        cursor: Optional[str] = None,
        max_pages: Optional[int] = None,
    ) -> dict:
        """
        Pull every record after ``cursor`` from ``source`` and ingest it.

        Args:
            source: Feedback source variant
            workspace_id: Workspace the feedback belongs to
            cursor: Resume point returned by a previous run
            max_pages: Stop after this many pages (None = until exhausted)

        Returns:
            Dictionary with processing statistics and the next cursor
        """
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("httpcore").setLevel(logging.WARNING)

        logger.info(f"Starting ingestion from {source.source_system} for workspace {workspace_id} (cursor={cursor})")

        stats = {"total_records": 0, "created": 0, "updated": 0, "unchanged": 0, "rejected": 0}
        pages = 0
        limiter_key = f"source:{source.source_system}"

        while max_pages is None or pages < max_pages:
            if self.store.is_workspace_deleted(workspace_id):
                logger.info(f"Workspace {workspace_id} deleted; stopping ingestion")
                break
            if not self.rate_limiters.acquire(limiter_key):
                logger.warning(f"Rate limiter '{limiter_key}' timed out; stopping at cursor {cursor}")
                break

            page = source.fetch_since(cursor)
            pages += 1
            if not page.records:
                break

            logger.info(f"Processing page {pages} ({len(page.records)} records)")
            for raw in page.records:
                stats["total_records"] += 1
                try:
                    outcome = self.normalizer.ingest(raw, source.source_system, workspace_id)
                except ValidationError as e:
                    logger.warning(f"Rejected feedback: {e}")
                    stats["rejected"] += 1
                    continue
                if outcome.created:
                    stats["created"] += 1
                elif outcome.changed:
                    stats["updated"] += 1
                else:
                    stats["unchanged"] += 1

            if page.next_cursor == cursor:
                break
            cursor = page.next_cursor

        logger.info(
            f"Ingestion complete: {stats['created']} created, {stats['updated']} updated, "
            f"{stats['unchanged']} unchanged, {stats['rejected']} rejected"
        )
        stats["next_cursor"] = cursor
        return stats

    def enqueue_raw(self, raw: RawFeedback, source_system: str, workspace_id: str) -> StageJob:
        """Turn an inbound record into an ingestion-stage message."""
        job = StageJob(
            stage=Stage.INGESTION,
            workspace_id=workspace_id,
            payload={"source_system": source_system, "raw": raw.model_dump(mode="json")},
        )
        self.store.enqueue(job)
        return job

    def handle_webhook(self, source, signature: str, payload: bytes, workspace_id: str) -> int:
        """
        Validate a webhook delivery and enqueue its records.

        Returns:
            Number of records enqueued

        Raises:
            ValidationError: Bad signature or malformed payload
        """
        if not source.validate_webhook(signature, payload):
            raise ValidationError(f"Invalid webhook signature for {source.source_system}")
        records = source.parse_payload(payload)
        for raw in records:
            self.enqueue_raw(raw, source.source_system, workspace_id)
        logger.info(f"Enqueued {len(records)} webhook records from {source.source_system}")
        return len(records)

    def process_job(self, job: StageJob) -> IngestOutcome:
        """Ingestion-stage handler for a queued raw record."""
        raw = RawFeedback(**job.payload["raw"])
        return self.normalizer.ingest(raw, job.payload["source_system"], job.workspace_id)


def main():
    """Main entry point for pulling feedback from a source with CLI arguments."""
    from src.data_access.postgres_store import PostgresStore
    from src.sources.base import build_source

    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    parser = argparse.ArgumentParser(
        description='Pull customer feedback from a source into the canonical store.'
    )
    parser.add_argument('--workspace', required=True, help='Workspace id the feedback belongs to')
    parser.add_argument('--source', default='sql_server', help='Source kind (sql_server)')
    parser.add_argument('--source-system', help='Source system name recorded on each item')
    parser.add_argument('--cursor', help='Resume after this cursor (ISO timestamp for sql_server)')
    parser.add_argument('--max-pages', type=int, help='Maximum number of pages to fetch')
    parser.add_argument('--init-schema', action='store_true', help='Create tables before ingesting')

    args = parser.parse_args()

    config = Settings()
    store = PostgresStore(config)
    source = build_source(args.source, config, source_system=args.source_system)

    try:
        if args.init_schema:
            store.initialize_schema()
        pipeline = IngestionPipeline(config, store)
        stats = pipeline.run(source, args.workspace, cursor=args.cursor, max_pages=args.max_pages)
    finally:
        store.close()
        if hasattr(source, "close"):
            source.close()

    print("\n" + "="*60)
    print("INGESTION PIPELINE RESULTS")
    print("="*60)
    print(f"Total records processed: {stats['total_records']}")
    print(f"Created: {stats['created']}")
    print(f"Updated: {stats['updated']}")
    print(f"Unchanged: {stats['unchanged']}")
    print(f"Rejected: {stats['rejected']}")
    print(f"Next cursor: {stats['next_cursor']}")
    print("="*60)


if __name__ == "__main__":
    main()
