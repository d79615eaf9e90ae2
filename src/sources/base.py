# src/sources/base.py
"""
Feedback source capability interface.

Each variant implements authenticate / fetch_since / validate_webhook on its
own; there is no shared mutable base state.
"""

import abc
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional

from src.config.settings import Settings
from src.models.errors import FatalConfigError
from src.models.schemas import RawFeedback


class SourceKind(str, Enum):
    SQL_SERVER = "sql_server"
    WEBHOOK = "webhook"


@dataclass
class FetchResult:
    """One finite page of records and the cursor to resume after it."""
    records: List[RawFeedback] = field(default_factory=list)
    next_cursor: Optional[str] = None


class FeedbackSource(abc.ABC):
    """Capability interface every feedback source variant implements."""

    kind: SourceKind
    source_system: str

    @abc.abstractmethod
    def authenticate(self) -> Any:
        """Return a credential/connection usable by fetch_since."""

    @abc.abstractmethod
    def fetch_since(self, cursor: Optional[str]) -> FetchResult:
        """Records created after ``cursor``. Finite and restartable from ``next_cursor``."""

    @abc.abstractmethod
    def validate_webhook(self, signature: str, payload: bytes) -> bool:
        """True if ``signature`` authenticates ``payload``."""


def build_source(kind: str, config: Settings, source_system: Optional[str] = None) -> FeedbackSource:
    """Instantiate the source variant named by ``kind``."""
    from src.sources.sql_server import SQLServerFeedbackSource
    from src.sources.webhook import WebhookFeedbackSource

    try:
        kind = SourceKind(kind)
    except ValueError:
        raise FatalConfigError(f"Unknown source kind '{kind}'. Supported: {[k.value for k in SourceKind]}")

    if kind == SourceKind.SQL_SERVER:
        return SQLServerFeedbackSource(config, source_system=source_system or "sql_server")
    return WebhookFeedbackSource(config, source_system=source_system or "webhook")
