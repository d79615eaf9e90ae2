"""Shared fixtures and deterministic fakes for the pipeline tests."""
import hashlib
import json
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

import numpy as np
import pytest

from src.agents.llm_agent import ModelProvider, ProviderResponse
from src.config.settings import Settings
from src.data_access.memory_store import InMemoryStore
from src.models.errors import DuplicatePushError, TransientProviderError
from src.models.schemas import EmbeddingVector, FeedbackItem, Tier, feedback_item_id
from src.pipelines.ingest import content_hash
from src.sync.jira_adapter import PMToolAdapter, idempotency_label

DIM = 8


@pytest.fixture
def config():
    """Real settings with test credentials and fast retries."""
    return Settings(
        openai_api_key="test-api-key",
        embedding_dimension=DIM,
        retry_base_delay=0.0,
        queue_poll_seconds=0.01,
        rate_limit_wait_seconds=1.0,
        jira_base_url="https://example.atlassian.net",
        jira_username="bot@example.com",
        jira_api_token="token",
        jira_project_key="FB",
    )


@pytest.fixture
def store():
    return InMemoryStore()


def unit(vector) -> List[float]:
    v = np.asarray(vector, dtype=float)
    return (v / np.linalg.norm(v)).tolist()


def near(base: List[float], axis: int, amount: float) -> List[float]:
    """``base`` nudged along one axis, renormalized."""
    v = np.asarray(base, dtype=float).copy()
    v[axis] += amount
    return unit(v)


def add_embedded_item(
    store,
    vector: List[float],
    external_id: str,
    workspace_id: str = "ws1",
    content: Optional[str] = None,
    sentiment: Optional[float] = None,
    created_at: Optional[datetime] = None,
) -> FeedbackItem:
    """Store a feedback item together with a current embedding."""
    content = content or f"feedback {external_id}"
    item = FeedbackItem(
        id=feedback_item_id(workspace_id, "test", external_id),
        workspace_id=workspace_id,
        source_system="test",
        external_id=external_id,
        content=content,
        created_at=created_at or datetime(2025, 3, 1, tzinfo=timezone.utc),
        sentiment=sentiment,
        content_hash=content_hash(content),
        embedding_stale=False,
    )
    embedding = EmbeddingVector(
        feedback_item_id=item.id, vector=vector, model="fake", content_hash=item.content_hash
    )
    item.embedding_id = embedding.id
    store.upsert_feedback_item(item)
    store.save_embedding(embedding)
    return item


class FakeEmbedder:
    """Deterministic embeddings: explicit vectors by text, otherwise hash-seeded."""

    provider_name = "fake"

    def __init__(self, vectors: Optional[Dict[str, List[float]]] = None, dim: int = DIM):
        self.vectors = vectors or {}
        self.dim = dim
        self.calls: List[str] = []
        self._lock = threading.Lock()

    def embed(self, text: str) -> List[float]:
        with self._lock:
            self.calls.append(text)
        if text in self.vectors:
            return list(self.vectors[text])
        seed = int(hashlib.sha256(text.encode("utf-8")).hexdigest()[:8], 16)
        return unit(np.random.default_rng(seed).normal(size=self.dim))


class FakeProvider(ModelProvider):
    """Model provider returning scripted replies (strings or exceptions)."""

    def __init__(self, tier: Tier, replies=None, reply: Optional[Callable[[List[dict]], str]] = None,
                 input_tokens: int = 400, output_tokens: int = 100):
        self.tier = tier
        self.model = f"fake-{tier.value}"
        self.replies = list(replies or [])
        self.reply = reply
        self.input_tokens = input_tokens
        self.output_tokens = output_tokens
        self.calls: List[List[dict]] = []
        self._lock = threading.Lock()

    def complete(self, messages: List[dict], timeout: Optional[float] = None) -> ProviderResponse:
        with self._lock:
            self.calls.append(messages)
            if self.replies:
                next_reply = self.replies.pop(0)
            elif self.reply is not None:
                next_reply = self.reply(messages)
            else:
                next_reply = json.dumps({"sentiment": -0.5, "themes": ["login"]})
        if isinstance(next_reply, Exception):
            raise next_reply
        return ProviderResponse(
            content=next_reply,
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            model=self.model,
        )


def fake_providers(**overrides) -> Dict[Tier, FakeProvider]:
    providers = {tier: FakeProvider(tier) for tier in (Tier.CHEAP, Tier.MID, Tier.PREMIUM)}
    for name, provider in overrides.items():
        providers[Tier(name)] = provider
    return providers


VALID_REQUIREMENT = json.dumps({
    "title": "Keep users signed in",
    "userStory": "As a returning customer, I want to stay signed in so that I do not retype my password",
    "acceptanceCriteria": [
        "Sessions last 30 days",
        "Signing out ends the session",
        "Password changes end other sessions",
    ],
})


class FakeJira(PMToolAdapter):
    """In-memory PM tool honoring the label-lookup-before-create protocol."""

    target_system = "jira"

    def __init__(self, fail_after_create: int = 0, errors=None):
        self.issues: Dict[str, str] = {}
        self.create_calls = 0
        self.fail_after_create = fail_after_create
        self.errors = list(errors or [])
        self._lock = threading.Lock()

    def create_issue(self, export: dict, idempotency_key: str) -> str:
        label = idempotency_label(idempotency_key)
        with self._lock:
            self.create_calls += 1
            if label in self.issues:
                raise DuplicatePushError("already exists", external_ref=self.issues[label])
            if self.errors:
                raise self.errors.pop(0)
            key = f"FB-{len(self.issues) + 1}"
            self.issues[label] = key
            if self.fail_after_create > 0:
                # The issue exists but the response never arrives
                self.fail_after_create -= 1
                raise TransientProviderError("read timed out")
            return key
