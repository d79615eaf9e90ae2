# src/agents/cache.py
"""
Analysis cache.

Entries are keyed by sha256 of (normalized content, tier, task kind) and
live in the canonical store so every worker process shares them.
"""

import hashlib
import logging
import re
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from src.config.settings import Settings
from src.data_access.store import CanonicalStore
from src.models.schemas import utcnow

logger = logging.getLogger(__name__)

WHITESPACE = re.compile(r"\s+")


def normalize_content(content: str) -> str:
    """Case-fold and collapse whitespace so trivially different inputs share a key."""
    return WHITESPACE.sub(" ", (content or "").strip()).lower()


def cache_key(normalized_content: str, tier: str, task_kind: str) -> str:
    tier = getattr(tier, "value", tier)
    task_kind = getattr(task_kind, "value", task_kind)
    digest = hashlib.sha256()
    for part in (normalized_content, tier, task_kind):
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()


class AnalysisCache:
    """TTL cache of validated model payloads."""

    def __init__(self, config: Settings, store: CanonicalStore, clock: Callable[[], datetime] = utcnow):
        self.store = store
        self.ttl = timedelta(hours=config.cache_ttl_hours)
        self._clock = clock

    def get(self, key: str) -> Optional[Dict[str, Any]]:
        payload = self.store.cache_get(key, self._clock())
        if payload is not None:
            logger.debug(f"Cache hit {key[:12]}")
        return payload

    def put(self, key: str, payload: Dict[str, Any]) -> None:
        self.store.cache_put(key, payload, self._clock() + self.ttl)

    def purge_expired(self) -> int:
        removed = self.store.cache_purge(self._clock())
        if removed:
            logger.info(f"Purged {removed} expired cache entries")
        return removed
