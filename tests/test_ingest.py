"""Unit tests for ingestion and normalization."""
import pytest
from unittest.mock import Mock
from datetime import datetime, timedelta, timezone

from conftest import FakeEmbedder
from src.embedding.embedder import EmbeddingService
from src.models.errors import FatalConfigError, ValidationError
from src.models.schemas import RawFeedback, Stage, feedback_item_id
from src.pipelines.dedup import DeduplicationEngine
from src.pipelines.ingest import (
    IngestionNormalizer,
    IngestionPipeline,
    clean_content,
    normalize_rating,
)
from src.sources.base import FetchResult


@pytest.fixture
def normalizer(config, store):
    return IngestionNormalizer(config, store)


def raw(external_id="42", content="Login keeps failing", rating=None, created_at=None):
    return RawFeedback(
        external_id=external_id,
        content=content,
        author="  jo  ",
        created_at=created_at or datetime(2025, 3, 1, tzinfo=timezone.utc),
        rating=rating,
    )


class TestCleanContent:
    """Test content cleaning."""

    def test_strips_control_characters_and_collapses_whitespace(self):
        assert clean_content("  Login\x00  is\t\tbroken \x07 ", 100) == "Login is broken"

    def test_collapses_blank_lines(self):
        assert clean_content("one\r\n\r\n\r\n\r\ntwo", 100) == "one\n\ntwo"

    def test_truncates_to_max_length(self):
        assert clean_content("a" * 50, 10) == "a" * 10

    def test_empty(self):
        assert clean_content(None, 10) == ""


class TestNormalizeRating:
    """Test rating normalization onto [-1, 1]."""

    def test_five_star_scale(self):
        assert normalize_rating(1, (1, 5)) == -1.0
        assert normalize_rating(3, (1, 5)) == 0.0
        assert normalize_rating(5, (1, 5)) == 1.0

    def test_clamps(self):
        assert normalize_rating(11, (0, 10)) == 1.0

    def test_missing_rating(self):
        assert normalize_rating(None, (1, 5)) is None

    def test_invalid_scale(self):
        with pytest.raises(FatalConfigError):
            normalize_rating(3, (5, 1))


class TestIngestionNormalizer:
    """Test IngestionNormalizer class."""

    def test_missing_external_id_rejected(self, normalizer):
        with pytest.raises(ValidationError):
            normalizer.normalize(raw(external_id=None), "zendesk", "ws1")

    def test_empty_content_rejected(self, normalizer):
        with pytest.raises(ValidationError):
            normalizer.normalize(raw(content=" \x00 "), "zendesk", "ws1")

    def test_uses_per_source_rating_scale(self, normalizer):
        item = normalizer.normalize(raw(rating=0), "nps", "ws1")
        assert item.sentiment == -1.0

    def test_naive_created_at_taken_as_utc(self, normalizer):
        item = normalizer.normalize(raw(created_at=datetime(2025, 3, 1, 9, 0)), "sql_server", "ws1")
        assert item.created_at == datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def test_offset_created_at_converted_to_utc(self, normalizer):
        paris = timezone(timedelta(hours=1))
        item = normalizer.normalize(raw(created_at=datetime(2025, 3, 1, 10, 0, tzinfo=paris)), "zendesk", "ws1")
        assert item.created_at.utcoffset() == timedelta(0)
        assert item.created_at == datetime(2025, 3, 1, 9, 0, tzinfo=timezone.utc)

    def test_naive_timestamps_flow_through_dedup(self, config, store, normalizer):
        normalizer.ingest(raw(created_at=datetime(2025, 3, 1, 9, 0)), "sql_server", "ws1")
        item_id = feedback_item_id("ws1", "sql_server", "42")
        EmbeddingService(config, store, embedder=FakeEmbedder()).ensure_embedding(item_id)

        cluster = DeduplicationEngine(config, store).assign(item_id)

        assert cluster.member_item_ids == {item_id}
        assert cluster.priority_score > 0

    def test_new_item_is_stored_and_queued_for_embedding(self, normalizer, store):
        outcome = normalizer.ingest(raw(), "zendesk", "ws1")

        assert outcome.created is True
        stored = store.get_feedback_item(feedback_item_id("ws1", "zendesk", "42"))
        assert stored.content == "Login keeps failing"
        assert stored.author == "jo"
        assert stored.embedding_stale is True
        assert store.queue_depth(Stage.EMBEDDING) == 1

    def test_unchanged_content_is_a_no_op(self, normalizer, store):
        normalizer.ingest(raw(), "zendesk", "ws1")
        outcome = normalizer.ingest(raw(), "zendesk", "ws1")

        assert outcome.created is False
        assert outcome.changed is False
        assert store.queue_depth(Stage.EMBEDDING) == 1

    def test_changed_content_marks_embedding_stale(self, normalizer, store):
        normalizer.ingest(raw(), "zendesk", "ws1")
        item_id = feedback_item_id("ws1", "zendesk", "42")
        item = store.get_feedback_item(item_id)
        item.embedding_stale = False
        item.embedding_id = "emb1"
        store.upsert_feedback_item(item)

        outcome = normalizer.ingest(raw(content="Login fails on Safari only"), "zendesk", "ws1")

        assert outcome.changed is True
        stored = store.get_feedback_item(item_id)
        assert stored.embedding_stale is True
        assert stored.embedding_id == "emb1"
        assert store.queue_depth(Stage.EMBEDDING) == 2


class TestIngestionPipeline:
    """Test IngestionPipeline class."""

    def test_run_pages_until_exhausted(self, config, store):
        source = Mock()
        source.source_system = "zendesk"
        source.fetch_since.side_effect = [
            FetchResult(records=[raw("1"), raw("2", content="")], next_cursor="c1"),
            FetchResult(records=[raw("3")], next_cursor="c2"),
            FetchResult(records=[], next_cursor="c2"),
        ]
        pipeline = IngestionPipeline(config, store)

        stats = pipeline.run(source, "ws1")

        assert stats["total_records"] == 3
        assert stats["created"] == 2
        assert stats["rejected"] == 1
        assert stats["next_cursor"] == "c2"
        source.fetch_since.assert_any_call(None)
        source.fetch_since.assert_any_call("c1")

    def test_run_stops_for_deleted_workspace(self, config, store):
        source = Mock()
        source.source_system = "zendesk"
        store.mark_workspace_deleted("ws1")

        stats = IngestionPipeline(config, store).run(source, "ws1")

        source.fetch_since.assert_not_called()
        assert stats["total_records"] == 0

    def test_webhook_with_bad_signature_rejected(self, config, store):
        source = Mock()
        source.source_system = "webhook"
        source.validate_webhook.return_value = False

        with pytest.raises(ValidationError):
            IngestionPipeline(config, store).handle_webhook(source, "sha256=bad", b"{}", "ws1")
        assert store.queue_depth(Stage.INGESTION) == 0

    def test_webhook_records_become_ingestion_jobs(self, config, store):
        source = Mock()
        source.source_system = "webhook"
        source.validate_webhook.return_value = True
        source.parse_payload.return_value = [raw("1"), raw("2")]
        pipeline = IngestionPipeline(config, store)

        count = pipeline.handle_webhook(source, "sha256=ok", b"{}", "ws1")

        assert count == 2
        job = store.dequeue(Stage.INGESTION, timeout=0)
        outcome = pipeline.process_job(job)
        assert outcome.item.source_system == "webhook"
        assert outcome.item.external_id == "1"
