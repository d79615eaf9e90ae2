# src/embedding/embedder.py
import openai
from openai import OpenAI
from typing import List, Optional
from src.agents.provider_errors import translate_openai_error
from src.config.settings import Settings
from src.data_access.store import CanonicalStore
from src.models.errors import FatalConfigError, TransientProviderError, ValidationError
from src.models.schemas import EmbeddingVector, FeedbackItem, utcnow
from src.resilience.rate_limiter import RateLimiterRegistry
from src.resilience.retry import call_with_retry
import logging

logger = logging.getLogger(__name__)


class Embedder:
    """OpenAI embedding client."""

    provider_name = "openai"

    def __init__(self, config: Settings):
        if not config.openai_api_key:
            raise FatalConfigError("OPENAI_API_KEY is not configured")
        self.config = config
        self.client = OpenAI(api_key=config.openai_api_key, timeout=config.embedding_timeout_seconds, max_retries=0)
        self.model = config.openai_embedding_model

    def _embed_batch(self, batch: List[str]) -> List[List[float]]:
        """
        Generate embeddings for a batch of texts with one API call.

        A timeout, connection failure, 5xx or rate limit surfaces as
        TransientProviderError; retry policy belongs to the caller.
        """
        try:
            response = self.client.embeddings.create(model=self.model, input=batch)
        except openai.OpenAIError as e:
            raise translate_openai_error(e) from e
        return [item.embedding for item in response.data]

    def embed(self, text: str) -> List[float]:
        """Embedding for a single text. Deterministic for identical input within a model version."""
        return self._embed_batch([text])[0]


class EmbeddingService:
    """Computes and stores the embedding owned by each feedback item."""

    def __init__(
        self,
        config: Settings,
        store: CanonicalStore,
        embedder=None,
        rate_limiters: Optional[RateLimiterRegistry] = None,
        sleep=None,
    ):
        self.config = config
        self.store = store
        self.embedder = embedder or Embedder(config)
        self.rate_limiters = rate_limiters
        self._sleep = sleep

    def ensure_embedding(self, item_id: str) -> Optional[EmbeddingVector]:
        """
        Return the item's embedding, computing it only if missing or stale.

        The item is only marked current when its content still hashes to what
        was embedded; a correction ingested meanwhile keeps it stale for the
        follow-up embedding job.

        Args:
            item_id: Feedback item id

        Returns:
            The current EmbeddingVector of the item, or None when the item
            changed while it was being embedded
        """
        item = self.store.get_feedback_item(item_id)
        if item is None:
            raise ValidationError(f"Feedback item {item_id} does not exist")

        existing = self.store.get_embedding(item_id)
        if existing is not None and not item.embedding_stale and existing.content_hash == item.content_hash:
            return existing

        vector = self._embed(item)
        if len(vector) != self.config.embedding_dimension:
            raise ValidationError(
                f"Embedding for {item_id} has dimension {len(vector)}, "
                f"expected {self.config.embedding_dimension}"
            )

        embedding = EmbeddingVector(
            feedback_item_id=item.id,
            vector=vector,
            model=self.config.openai_embedding_model,
            content_hash=item.content_hash,
            computed_at=utcnow(),
        )
        with self.store.lock(f"item:{item_id}"):
            latest = self.store.get_feedback_item(item_id)
            if latest is None or latest.content_hash != embedding.content_hash:
                logger.info(f"Item {item_id} changed while embedding; discarding the stale vector")
                return None
            self.store.save_embedding(embedding)
            latest.embedding_id = embedding.id
            latest.embedding_stale = False
            self.store.upsert_feedback_item(latest)
        logger.info(f"Computed embedding for item {item_id} ({len(vector)} dims)")
        return embedding

    def _embed(self, item: FeedbackItem) -> List[float]:
        def attempt():
            if self.rate_limiters is not None:
                key = f"provider:{getattr(self.embedder, 'provider_name', 'embedding')}"
                if not self.rate_limiters.acquire(key):
                    raise TransientProviderError(f"Rate limiter '{key}' wait timed out")
            return self.embedder.embed(item.content)

        kwargs = {"sleep": self._sleep} if self._sleep else {}
        return call_with_retry(
            attempt,
            max_attempts=self.config.llm_max_attempts,
            base_delay=self.config.retry_base_delay,
            description=f"embedding of item {item.id}",
            **kwargs,
        )
