"""
Integration tests for the event -> task -> assignment flow.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import RetryExhausted, ValidationError
from shared.logging import add_correlation_context, clear_context
from shared.metrics import MetricsCollector
from shared.test_helpers import TestDataFactory, TestEnvironment
from service_task_engine.app.engine import create_engine
from service_task_engine.app.queue.models import PriorityBand, TaskStatus
from service_task_engine.app.rules.catalog import default_catalog


class TestEventToAssignmentFlow:
    """End-to-end flow through the engine facade over the in-memory store."""

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("task-engine-integration")

    @pytest.fixture
    async def engine(self, metrics):
        config = TestEnvironment.build_config()
        engine = create_engine(config, metrics)
        await TestDataFactory.seed_personnel(engine.store, collection=config.personnel_collection)
        await engine.start()
        yield engine
        await engine.close()

    @pytest.mark.asyncio
    async def test_large_transaction_becomes_assigned_task(self, engine):
        entity = TestDataFactory.create_large_transaction(entity_id="txn-100")

        task_ids = await engine.submit_event("transaction", entity)

        assert len(task_ids) == 1
        task = await engine.get_task(task_ids[0])
        assert task.title == "Large payment requires review: 12000000 UGX"
        assert task.rule_id == "fin_large_transaction"
        assert task.source_entity_id == "txn-100"
        assert task.org_id == "org-1"
        assert task.assignee in ("emp-1", "emp-3")
        assert task.metadata["catalog_version"] == 1

    @pytest.mark.asyncio
    async def test_burst_of_identical_events_leaves_one_pending_task(self, engine, metrics):
        entity = TestDataFactory.create_large_transaction(entity_id="txn-200")

        results = await asyncio.gather(*[engine.submit_event("transaction", entity) for _ in range(5)])

        assert sum(len(ids) for ids in results) == 1
        pending = await engine.get_queue_slice("org-1", statuses=[TaskStatus.PENDING])
        assert len(pending) == 1
        assert metrics.sample("duplicate_tasks_suppressed_total", rule_id="fin_large_transaction") == 4.0

    @pytest.mark.asyncio
    async def test_repeated_failures_then_exhausted_retry(self, engine):
        entity = TestDataFactory.create_large_transaction(entity_id="txn-300")
        task_id = (await engine.submit_event("transaction", entity))[0]

        for _ in range(3):
            await engine.transition_task(task_id, TaskStatus.IN_PROGRESS)
            task = await engine.transition_task(task_id, TaskStatus.FAILED, error="upstream timeout")

        assert task.status is TaskStatus.FAILED
        assert task.retry_count == 3
        with pytest.raises(RetryExhausted):
            await engine.retry_task(task_id)

        # The failed task no longer blocks new detections for the same entity
        assert len(await engine.submit_event("transaction", entity)) == 1

    @pytest.mark.asyncio
    async def test_unlinked_assignee_workload(self, engine):
        entity = TestDataFactory.create_large_transaction(entity_id="txn-400")
        task_id = (await engine.submit_event("transaction", entity))[0]

        assert await engine.resolver.resolve("contractor-uid") == "contractor-uid"
        await engine.queue.mutate(
            task_id, lambda task, now: {"assignee": "contractor-uid"}, "assigned", {"actor": "import"}
        )

        workload = await engine.get_workload_snapshot(["contractor-uid"])
        assert workload["contractor-uid"].pending == 1
        assert workload["contractor-uid"].has_record is False

    @pytest.mark.asyncio
    async def test_bulk_assign_with_completed_task(self, engine):
        ids = []
        for n in range(3):
            entity = TestDataFactory.create_large_transaction(entity_id=f"txn-50{n}")
            ids.extend(await engine.submit_event("transaction", entity))
        t1, t2, t3 = ids
        await engine.take_up(t2, "emp-1", "emp-1")
        await engine.transition_task(t2, TaskStatus.COMPLETED)

        result = await engine.bulk_assign([t1, t2, t3], "auth-uid-2", "manager-1")

        assert result.succeeded == [t1, t3]
        assert result.failed == {t2: "INVALID_STATE_TRANSITION"}
        assert result.partial is True
        assert (await engine.get_task(t1)).assignee == "emp-2"

    @pytest.mark.asyncio
    async def test_leave_request_routes_to_hr(self, engine):
        entity = TestDataFactory.create_leave_request(entity_id="leave-9")

        task_ids = await engine.submit_event("request", entity)

        task = await engine.get_task(task_ids[0])
        assert task.rule_id == "hr_leave_conflict"
        assert task.source_module == "hr"
        assert task.priority.value == "P2"
        assert task.assignee == "emp-2"

    @pytest.mark.asyncio
    async def test_catalog_reload_applies_to_next_event(self, engine):
        engine.set_rule_enabled("fin_large_transaction", False)
        entity = TestDataFactory.create_large_transaction(entity_id="txn-600")
        assert await engine.submit_event("transaction", entity) == []

        reloaded = engine.reload_catalog()
        assert reloaded.version == 3
        assert len(await engine.submit_event("transaction", entity)) == 1

    @pytest.mark.asyncio
    async def test_stale_catalog_version_rejected(self, engine):
        with pytest.raises(ValidationError):
            engine.reload_catalog(default_catalog())

    @pytest.mark.asyncio
    async def test_queue_subscription_follows_changes(self, engine):
        stream = engine.subscribe_queue("org-1", statuses=[TaskStatus.PENDING])
        assert await stream.__anext__() == []

        entity = TestDataFactory.create_large_transaction(entity_id="txn-700")
        task_id = (await engine.submit_event("transaction", entity))[0]

        snapshot = await asyncio.wait_for(stream.__anext__(), timeout=1)
        assert [t.id for t in snapshot] == [task_id]
        await stream.aclose()

    @pytest.mark.asyncio
    async def test_overdue_task_escalates_once(self, engine, metrics):
        entity = TestDataFactory.create_large_transaction(entity_id="txn-800")
        task_id = (await engine.submit_event("transaction", entity))[0]
        later = datetime.now(timezone.utc) + timedelta(hours=9)

        escalated = await engine.escalate_overdue("org-1", now=later)

        assert [t.id for t in escalated] == [task_id]
        assert escalated[0].priority is PriorityBand.P0
        assert await engine.escalate_overdue("org-1", now=later + timedelta(hours=2)) == []
        assert metrics.sample("tasks_escalated_total", from_priority="P1", to_priority="P0") == 1.0

    @pytest.mark.asyncio
    async def test_unassigned_task_is_routed_by_sweep(self, engine):
        entity = TestDataFactory.create_large_transaction(entity_id="txn-900")
        task_id = (await engine.submit_event("transaction", entity))[0]
        await engine.queue.mutate(task_id, lambda task, now: {"assignee": None}, "unassigned", {"actor": "import"})

        result = await engine.route_unassigned("org-1", older_than=timedelta(0))

        assert result.succeeded == [task_id]
        assert (await engine.get_task(task_id)).assignee in ("emp-1", "emp-3")

    @pytest.mark.asyncio
    async def test_event_processing_binds_org_to_log_context(self, engine):
        entity = TestDataFactory.create_large_transaction(entity_id="txn-950", org_id="org-7")

        await engine.submit_event("transaction", entity)

        try:
            assert add_correlation_context(None, "info", {})["org_id"] == "org-7"
        finally:
            clear_context()
