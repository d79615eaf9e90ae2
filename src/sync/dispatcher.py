# src/sync/dispatcher.py
"""
Idempotent push of synthesized requirements to PM tools.

At most one SyncRecord exists per (requirement, target) idempotency key, and
every dispatch for a key runs under the store's lock for that key, so
concurrent or repeated dispatches create at most one external issue.
"""

import hashlib
import logging
import time
from typing import Callable, Dict, List, Optional

from src.config.settings import Settings
from src.data_access.store import CanonicalStore
from src.models.errors import (
    DuplicatePushError,
    FatalConfigError,
    JobCancelledError,
    PipelineError,
    TransientProviderError,
    ValidationError,
)
from src.models.schemas import (
    OperatorTicket,
    RequirementStatus,
    SyncRecord,
    SyncState,
    TicketQueue,
    utcnow,
)
from src.resilience.rate_limiter import RateLimiterRegistry
from src.resilience.retry import call_with_retry
from src.sync.jira_adapter import PMToolAdapter, build_adapter

logger = logging.getLogger(__name__)

DISPATCHABLE = (RequirementStatus.SYNTHESIZED, RequirementStatus.EXPORTED)


def idempotency_key(requirement_id: str, target_system: str) -> str:
    return hashlib.sha256(f"{requirement_id}:{target_system}".encode("utf-8")).hexdigest()


class SyncDispatcher:
    """Pushes requirement exports to target systems exactly once per key."""

    def __init__(
        self,
        config: Settings,
        store: CanonicalStore,
        adapters: Optional[Dict[str, PMToolAdapter]] = None,
        rate_limiters: Optional[RateLimiterRegistry] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.store = store
        self.adapters = dict(adapters or {})
        self.rate_limiters = rate_limiters
        self._sleep = sleep

    def _adapter(self, target_system: str) -> PMToolAdapter:
        if target_system not in self.adapters:
            self.adapters[target_system] = build_adapter(target_system, self.config)
        return self.adapters[target_system]

    def dispatch(self, requirement_id: str, target_system: str) -> SyncRecord:
        """
        Push a requirement to one target system.

        Returns:
            The SyncRecord for the key; ``succeeded`` records are returned as-is
            without calling the target again. A ``failed`` record has an
            operator ticket filed.

        Raises:
            ValidationError: Unknown requirement, or it is not synthesized yet
            JobCancelledError: The workspace was deleted
        """
        requirement = self.store.get_requirement(requirement_id)
        if requirement is None:
            raise ValidationError(f"Requirement {requirement_id} does not exist")
        if self.store.is_workspace_deleted(requirement.workspace_id):
            raise JobCancelledError(f"Workspace {requirement.workspace_id} was deleted")
        if requirement.status not in DISPATCHABLE:
            raise ValidationError(f"Requirement {requirement_id} is {requirement.status}; only synthesized requirements sync")

        key = idempotency_key(requirement_id, target_system)
        with self.store.lock(f"sync:{key}"):
            record = self.store.get_sync_record(key)
            if record is None:
                record = SyncRecord(requirement_id=requirement_id, target_system=target_system, idempotency_key=key)
            if record.state == SyncState.SUCCEEDED:
                logger.debug(f"Requirement {requirement_id} already synced to {target_system} as {record.external_ref}")
                return record

            record.state = SyncState.IN_PROGRESS
            record.failure_reason = None
            self.store.save_sync_record(record)

            try:
                adapter = self._adapter(target_system)
                external_ref = self._push(adapter, record, requirement.to_export())
            except DuplicatePushError as e:
                logger.info(f"{target_system} already has {e.external_ref} for requirement {requirement_id}")
                external_ref = e.external_ref
            except PipelineError as e:
                return self._fail(record, requirement.workspace_id, e)

            record.external_ref = external_ref
            record.state = SyncState.SUCCEEDED
            self.store.save_sync_record(record)

        with self.store.lock(f"requirement:{requirement.cluster_id}"):
            latest = self.store.get_requirement(requirement_id)
            if latest is not None and latest.status == RequirementStatus.SYNTHESIZED:
                latest.status = RequirementStatus.EXPORTED
                latest.updated_at = utcnow()
                self.store.save_requirement(latest)
        logger.info(f"Requirement {requirement_id} synced to {target_system} as {external_ref}")
        return record

    def _push(self, adapter: PMToolAdapter, record: SyncRecord, export: dict) -> str:
        def attempt() -> str:
            record.attempt_count += 1
            record.last_attempt_at = utcnow()
            self.store.save_sync_record(record)
            if self.rate_limiters is not None:
                limiter_key = f"provider:{record.target_system}"
                if not self.rate_limiters.acquire(limiter_key):
                    raise TransientProviderError(f"Rate limiter '{limiter_key}' wait timed out")
            return adapter.create_issue(export, record.idempotency_key)

        return call_with_retry(
            attempt,
            max_attempts=self.config.sync_max_attempts,
            base_delay=self.config.retry_base_delay,
            description=f"push of requirement {record.requirement_id} to {record.target_system}",
            sleep=self._sleep,
        )

    def _fail(self, record: SyncRecord, workspace_id: str, error: PipelineError) -> SyncRecord:
        record.state = SyncState.FAILED
        record.failure_reason = f"{type(error).__name__}: {error}"
        self.store.save_sync_record(record)
        self.store.add_ticket(OperatorTicket(
            queue=TicketQueue.OPERATOR,
            entity_type="sync_record",
            entity_id=record.idempotency_key,
            workspace_id=workspace_id,
            reason=record.failure_reason,
        ))
        level = logging.ERROR if isinstance(error, (FatalConfigError, TransientProviderError)) else logging.WARNING
        logger.log(level, f"Sync of requirement {record.requirement_id} to {record.target_system} failed: {error}")
        return record

    def dispatch_all(self, requirement_id: str) -> List[SyncRecord]:
        """Dispatch to every configured target."""
        return [self.dispatch(requirement_id, target) for target in self.config.sync_targets]

    def retry_failed(self, workspace_id: Optional[str] = None) -> List[SyncRecord]:
        """Re-dispatch every failed sync record (optionally only one workspace's)."""
        results = []
        for record in self.store.list_sync_records(SyncState.FAILED.value):
            requirement = self.store.get_requirement(record.requirement_id)
            if requirement is None:
                continue
            if workspace_id is not None and requirement.workspace_id != workspace_id:
                continue
            try:
                results.append(self.dispatch(record.requirement_id, record.target_system))
            except (ValidationError, JobCancelledError) as e:
                logger.warning(f"Skipping retry of {record.idempotency_key}: {e}")
        logger.info(f"Retried {len(results)} failed sync records")
        return results
