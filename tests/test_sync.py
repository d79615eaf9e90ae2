"""Unit tests for the SyncDispatcher class."""
import threading
import pytest
from unittest.mock import Mock

from conftest import FakeJira
from src.models.errors import FatalConfigError, JobCancelledError, TransientProviderError, ValidationError
from src.models.schemas import (
    PriorityBucket,
    Requirement,
    RequirementStatus,
    SyncState,
    TicketQueue,
)
from src.sync.dispatcher import SyncDispatcher, idempotency_key


def saved_requirement(store, status=RequirementStatus.SYNTHESIZED, workspace_id="ws1"):
    requirement = Requirement(
        cluster_id="c1",
        workspace_id=workspace_id,
        title="Keep users signed in",
        user_story="As a user, I want to stay signed in so that I save time",
        acceptance_criteria=["Sessions last 30 days"],
        priority_bucket=PriorityBucket.HIGH,
        source_feedback_ids={"a", "b"},
        status=status,
    )
    store.save_requirement(requirement)
    return requirement


@pytest.fixture
def jira():
    return FakeJira()


@pytest.fixture
def dispatcher(config, store, jira):
    return SyncDispatcher(config, store, adapters={"jira": jira}, sleep=Mock())


class TestIdempotencyKey:
    """Test idempotency key derivation."""

    def test_stable_per_requirement_and_target(self):
        assert idempotency_key("r1", "jira") == idempotency_key("r1", "jira")
        assert idempotency_key("r1", "jira") != idempotency_key("r1", "linear")
        assert idempotency_key("r1", "jira") != idempotency_key("r2", "jira")


class TestDispatch:
    """Test SyncDispatcher.dispatch."""

    def test_successful_push(self, dispatcher, store, jira):
        requirement = saved_requirement(store)

        record = dispatcher.dispatch(requirement.id, "jira")

        assert record.state == SyncState.SUCCEEDED
        assert record.external_ref == "FB-1"
        assert record.attempt_count == 1
        assert store.get_requirement(requirement.id).status == RequirementStatus.EXPORTED

    def test_lost_response_is_retried_without_duplicate_issue(self, config, store):
        jira = FakeJira(fail_after_create=1)
        dispatcher = SyncDispatcher(config, store, adapters={"jira": jira}, sleep=Mock())
        requirement = saved_requirement(store)

        record = dispatcher.dispatch(requirement.id, "jira")

        assert len(jira.issues) == 1
        assert record.state == SyncState.SUCCEEDED
        assert record.external_ref == "FB-1"
        assert record.attempt_count == 2
        stored = store.get_sync_record(idempotency_key(requirement.id, "jira"))
        assert stored.state == SyncState.SUCCEEDED
        assert stored.external_ref == "FB-1"

    def test_repeat_dispatch_does_not_call_target(self, dispatcher, store, jira):
        requirement = saved_requirement(store)
        dispatcher.dispatch(requirement.id, "jira")

        again = dispatcher.dispatch(requirement.id, "jira")

        assert again.state == SyncState.SUCCEEDED
        assert jira.create_calls == 1

    def test_concurrent_dispatches_create_one_issue(self, dispatcher, store, jira):
        requirement = saved_requirement(store)
        barrier = threading.Barrier(10)
        results = []

        def push():
            barrier.wait()
            results.append(dispatcher.dispatch(requirement.id, "jira"))

        threads = [threading.Thread(target=push) for _ in range(10)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(jira.issues) == 1
        assert jira.create_calls == 1
        assert {r.external_ref for r in results} == {"FB-1"}
        assert len(store.list_sync_records()) == 1

    def test_unsynthesized_requirement_rejected(self, dispatcher, store, jira):
        requirement = saved_requirement(store, status=RequirementStatus.REVIEW)

        with pytest.raises(ValidationError):
            dispatcher.dispatch(requirement.id, "jira")
        assert jira.create_calls == 0

    def test_unknown_requirement_rejected(self, dispatcher):
        with pytest.raises(ValidationError):
            dispatcher.dispatch("missing", "jira")

    def test_deleted_workspace_cancels(self, dispatcher, store):
        requirement = saved_requirement(store)
        store.mark_workspace_deleted("ws1")

        with pytest.raises(JobCancelledError):
            dispatcher.dispatch(requirement.id, "jira")

    def test_exhausted_retries_fail_with_operator_ticket(self, config, store):
        jira = FakeJira(errors=[TransientProviderError("503")] * config.sync_max_attempts)
        dispatcher = SyncDispatcher(config, store, adapters={"jira": jira}, sleep=Mock())
        requirement = saved_requirement(store)

        record = dispatcher.dispatch(requirement.id, "jira")

        assert record.state == SyncState.FAILED
        assert record.attempt_count == config.sync_max_attempts
        assert "503" in record.failure_reason
        tickets = store.list_tickets(TicketQueue.OPERATOR, "ws1")
        assert [t.entity_id for t in tickets] == [record.idempotency_key]
        assert store.get_requirement(requirement.id).status == RequirementStatus.SYNTHESIZED

    def test_fatal_error_is_not_retried(self, config, store):
        jira = FakeJira(errors=[FatalConfigError("bad credentials")])
        dispatcher = SyncDispatcher(config, store, adapters={"jira": jira}, sleep=Mock())
        requirement = saved_requirement(store)

        record = dispatcher.dispatch(requirement.id, "jira")

        assert record.state == SyncState.FAILED
        assert jira.create_calls == 1

    def test_retry_failed(self, config, store):
        jira = FakeJira(errors=[TransientProviderError("503")] * config.sync_max_attempts)
        dispatcher = SyncDispatcher(config, store, adapters={"jira": jira}, sleep=Mock())
        requirement = saved_requirement(store)
        dispatcher.dispatch(requirement.id, "jira")

        results = dispatcher.retry_failed("ws1")

        assert [r.state for r in results] == [SyncState.SUCCEEDED]
        assert len(jira.issues) == 1
        assert dispatcher.retry_failed("ws1") == []

    def test_dispatch_all_uses_configured_targets(self, dispatcher, store, jira):
        requirement = saved_requirement(store)

        records = dispatcher.dispatch_all(requirement.id)

        assert [r.target_system for r in records] == ["jira"]
