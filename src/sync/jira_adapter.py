# src/sync/jira_adapter.py
"""
PM tool adapters.

An adapter creates one issue per requirement export. Issues are labelled with
a token derived from the idempotency key, and the label is looked up before
creating, so a retry after a lost response reports the existing issue instead
of creating a second one.
"""

import abc
import json
import logging
from typing import Any, Dict, List, Optional

import requests
from requests.auth import HTTPBasicAuth

from src.config.settings import Settings
from src.models.errors import (
    DuplicatePushError,
    FatalConfigError,
    RateLimitError,
    TransientProviderError,
    ValidationError,
)

logger = logging.getLogger(__name__)


def idempotency_label(idempotency_key: str) -> str:
    return f"fbp-{idempotency_key[:32]}"


class PMToolAdapter(abc.ABC):
    """Outbound connector to a project-management tool."""

    target_system: str

    @abc.abstractmethod
    def create_issue(self, export: Dict[str, Any], idempotency_key: str) -> str:
        """
        Create an issue from a requirement export.

        Returns:
            External reference of the created issue

        Raises:
            DuplicatePushError: The issue for this idempotency key already exists
            TransientProviderError: Timeout, 5xx or connection failure
            FatalConfigError: Credentials or project configuration rejected
        """


class JiraAdapter(PMToolAdapter):
    """Jira Cloud REST v3 adapter."""

    target_system = "jira"

    def __init__(self, config: Settings, session: Optional[requests.Session] = None):
        """
        Initialize the Jira adapter.

        Args:
            config: Application settings (jira_* fields)
            session: Optional requests session (shared connection pool)
        """
        if not config.jira_base_url:
            raise FatalConfigError("JIRA_BASE_URL is not configured")
        if not config.jira_username or not config.jira_api_token:
            raise FatalConfigError("JIRA_USERNAME and JIRA_API_TOKEN must be configured")
        if not config.jira_project_key:
            raise FatalConfigError("JIRA_PROJECT_KEY is not configured")

        self.jira_url = config.jira_base_url.rstrip("/")
        self.project_key = config.jira_project_key
        self.issue_type = config.jira_issue_type
        self.timeout = config.pm_tool_timeout_seconds
        self.auth = HTTPBasicAuth(config.jira_username, config.jira_api_token)
        self.session = session or requests.Session()

    def _make_request(
        self,
        endpoint: str,
        method: str = "GET",
        data: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        """
        Make an authenticated request and map failures onto pipeline errors.

        Raises:
            RateLimitError: HTTP 429
            TransientProviderError: Timeout, connection failure or 5xx
            FatalConfigError: HTTP 401/403
            ValidationError: Any other 4xx
        """
        url = f"{self.jira_url}{endpoint}"
        headers = {"Accept": "application/json", "Content-Type": "application/json"}

        try:
            response = self.session.request(
                method,
                url,
                auth=self.auth,
                headers=headers,
                params=params,
                data=json.dumps(data) if data else None,
                timeout=self.timeout,
            )
        except requests.exceptions.Timeout as e:
            raise TransientProviderError(f"Jira request timed out after {self.timeout}s: {e}") from e
        except requests.exceptions.RequestException as e:
            raise TransientProviderError(f"Jira request failed: {e}") from e

        status = response.status_code
        if status == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                "Jira rate limit exceeded",
                retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        if status >= 500:
            raise TransientProviderError(f"Jira server error {status}: {response.text[:200]}")
        if status in (401, 403):
            raise FatalConfigError(f"Jira rejected credentials ({status})")
        if status >= 400:
            raise ValidationError(f"Jira rejected the request ({status}): {response.text[:200]}")

        # Some responses may be empty (204 No Content)
        if response.content:
            return response.json()
        return {}

    def find_issue(self, label: str) -> Optional[str]:
        """Key of the issue carrying ``label`` in the configured project, if any."""
        jql = f'project = "{self.project_key}" AND labels = "{label}"'
        result = self._make_request(
            "/rest/api/3/search/jql",
            params={"jql": jql, "fields": "key", "maxResults": 1},
        )
        issues = result.get("issues", [])
        return issues[0]["key"] if issues else None

    def create_issue(self, export: Dict[str, Any], idempotency_key: str) -> str:
        label = idempotency_label(idempotency_key)
        existing = self.find_issue(label)
        if existing:
            raise DuplicatePushError(f"Jira issue {existing} already exists for {label}", external_ref=existing)

        body = {
            "fields": {
                "project": {"key": self.project_key},
                "summary": export["title"][:255],
                "issuetype": {"name": self.issue_type},
                "labels": [label, f"priority-{export['priority']}"],
                "description": self._build_description(export),
            }
        }
        created = self._make_request("/rest/api/3/issue", method="POST", data=body)
        key = created.get("key")
        if not key:
            raise TransientProviderError("Jira create response carried no issue key")
        logger.info(f"Created Jira issue {key} ({label})")
        return key

    @staticmethod
    def _build_description(export: Dict[str, Any]) -> Dict[str, Any]:
        """Atlassian Document Format body: user story, acceptance criteria, sources."""

        def paragraph(text: str) -> Dict[str, Any]:
            return {"type": "paragraph", "content": [{"type": "text", "text": text}]}

        def bullets(items: List[str]) -> Dict[str, Any]:
            return {
                "type": "bulletList",
                "content": [{"type": "listItem", "content": [paragraph(item)]} for item in items],
            }

        return {
            "type": "doc",
            "version": 1,
            "content": [
                paragraph(export["userStory"]),
                paragraph("Acceptance criteria:"),
                bullets(export["acceptanceCriteria"]),
                paragraph(f"Source feedback: {', '.join(export['sourceFeedbackIds'])}"),
            ],
        }


ADAPTERS = {
    JiraAdapter.target_system: JiraAdapter,
}


def build_adapter(target_system: str, config: Settings) -> PMToolAdapter:
    adapter_cls = ADAPTERS.get(target_system)
    if adapter_cls is None:
        raise FatalConfigError(f"No adapter for target system '{target_system}'")
    return adapter_cls(config)
