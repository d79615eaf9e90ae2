"""
Push source: feedback arrives as signed webhook deliveries.
"""

import hashlib
import hmac
import json
from typing import Any, Dict, List, Optional

import pydantic

from src.config.settings import Settings
from src.models.errors import FatalConfigError, ValidationError
from src.models.schemas import RawFeedback
from src.sources.base import FeedbackSource, FetchResult, SourceKind


class WebhookFeedbackSource(FeedbackSource):
    """Feedback delivered by HMAC-SHA256 signed webhooks."""

    kind = SourceKind.WEBHOOK

    def __init__(self, config: Settings, source_system: str = "webhook"):
        self.config = config
        self.source_system = source_system

    def authenticate(self) -> bytes:
        if not self.config.webhook_secret:
            raise FatalConfigError("WEBHOOK_SECRET is not configured")
        return self.config.webhook_secret.encode("utf-8")

    def fetch_since(self, cursor: Optional[str]) -> FetchResult:
        # Deliveries are pushed; there is nothing to pull.
        return FetchResult(records=[], next_cursor=cursor)

    def validate_webhook(self, signature: str, payload: bytes) -> bool:
        """Constant-time check of a ``sha256=<hex>`` (or bare hex) signature."""
        if not signature:
            return False
        secret = self.authenticate()
        expected = hmac.new(secret, payload, hashlib.sha256).hexdigest()
        provided = signature.split("=", 1)[1] if signature.startswith("sha256=") else signature
        return hmac.compare_digest(expected, provided.strip().lower())

    def parse_payload(self, payload: bytes) -> List[RawFeedback]:
        """
        Parse a delivery into RawFeedback records.

        Accepts a single object or ``{"feedback": [...]}``. Field names may be
        camelCase (externalId, createdAt) or snake_case.
        """
        try:
            body = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Webhook payload is not valid JSON: {e}") from e

        entries = body.get("feedback", [body]) if isinstance(body, dict) else body
        if not isinstance(entries, list):
            raise ValidationError("Webhook payload must be an object or a list of objects")
        return [self._to_raw(entry) for entry in entries]

    @staticmethod
    def _to_raw(entry: Dict[str, Any]) -> RawFeedback:
        if not isinstance(entry, dict):
            raise ValidationError("Webhook feedback entry must be an object")
        created_at = entry.get("createdAt") or entry.get("created_at")
        if not created_at:
            raise ValidationError("Webhook feedback entry is missing createdAt")
        external_id = entry.get("externalId", entry.get("external_id"))
        try:
            return RawFeedback(
                external_id=str(external_id) if external_id is not None else None,
                content=entry.get("content"),
                author=entry.get("author"),
                created_at=created_at,
                rating=entry.get("rating"),
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"Malformed webhook feedback entry: {e}") from e
