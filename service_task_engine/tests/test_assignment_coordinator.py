"""
Unit tests for the assignment coordinator.
"""

from datetime import timedelta

import pytest

import sys
import os
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from shared.errors import InvalidStateTransition, TaskNotFound, UnknownAssignee
from shared.metrics import MetricsCollector
from shared.test_helpers import TestDataFactory, TestEnvironment
from service_task_engine.app.assignment.coordinator import SYSTEM_ACTOR, AssignmentCoordinator
from service_task_engine.app.identity.resolver import IdentityResolver
from service_task_engine.app.queue.models import TaskDraft, TaskStatus
from service_task_engine.app.queue.task_queue import TaskQueue
from service_task_engine.app.store.memory import InMemoryDocumentStore
from service_task_engine.app.workload.accountant import WorkloadAccountant

LONG_AGO = "2020-01-01T00:00:00.000000+00:00"


def draft(**overrides):
    return TaskDraft(**TestDataFactory.create_task_draft(**overrides))


class TestAssignmentCoordinator:
    """Test cases for AssignmentCoordinator."""

    @pytest.fixture
    def store(self):
        return InMemoryDocumentStore()

    @pytest.fixture
    def config(self):
        return TestEnvironment.build_config()

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("task-engine-test")

    @pytest.fixture
    def queue(self, store, config, metrics):
        return TaskQueue(store, config, metrics)

    @pytest.fixture
    async def coordinator(self, store, config, metrics, queue):
        await TestDataFactory.seed_personnel(store, collection=config.personnel_collection)
        resolver = IdentityResolver(store, config, metrics)
        accountant = WorkloadAccountant(store, resolver, config)
        return AssignmentCoordinator(queue, resolver, accountant, store, config, metrics)

    async def completed_task(self, queue):
        task = await queue.enqueue(draft())
        await queue.transition(task.id, TaskStatus.IN_PROGRESS)
        return await queue.transition(task.id, TaskStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_assign_resolves_external_id(self, coordinator, queue):
        task = await queue.enqueue(draft())

        assigned = await coordinator.assign(task.id, "auth-uid-1", "manager-1", "owns budget")

        assert assigned.assignee == "emp-1"
        assert assigned.assigned_by == "manager-1"
        assert assigned.assignment_reason == "owns budget"
        assert assigned.assigned_at is not None
        assert assigned.status is TaskStatus.PENDING
        entry = assigned.history[-1]
        assert entry["event"] == "assigned"
        assert entry["metadata"]["previous_assignee"] is None
        assert entry["metadata"]["assignee"] == "emp-1"
        assert entry["metadata"]["requested_assignee"] == "auth-uid-1"
        assert entry["metadata"]["actor"] == "manager-1"

    @pytest.mark.asyncio
    async def test_reassign_records_previous_assignee(self, coordinator, queue):
        task = await queue.enqueue(draft())
        await coordinator.assign(task.id, "emp-1", "manager-1")

        reassigned = await coordinator.reassign(task.id, "emp-2", "manager-1", "rebalancing")

        assert reassigned.assignee == "emp-2"
        assert reassigned.history[-1]["event"] == "reassigned"
        assert reassigned.history[-1]["metadata"]["previous_assignee"] == "emp-1"

    @pytest.mark.asyncio
    async def test_take_up_starts_work(self, coordinator, queue):
        task = await queue.enqueue(draft())

        taken = await coordinator.take_up(task.id, "emp-3", "emp-3")

        assert taken.assignee == "emp-3"
        assert taken.status is TaskStatus.IN_PROGRESS
        assert taken.started_at is not None
        entry = taken.history[-1]
        assert entry["event"] == "taken_up"
        assert entry["metadata"]["from_status"] == "pending"
        assert entry["metadata"]["to_status"] == "in_progress"

    @pytest.mark.asyncio
    async def test_take_up_from_blocked(self, coordinator, queue):
        task = await queue.enqueue(draft())
        await queue.transition(task.id, TaskStatus.BLOCKED)

        taken = await coordinator.take_up(task.id, "emp-1", "emp-1")

        assert taken.status is TaskStatus.IN_PROGRESS

    @pytest.mark.asyncio
    async def test_unknown_assignee(self, coordinator, queue):
        task = await queue.enqueue(draft())

        with pytest.raises(UnknownAssignee):
            await coordinator.assign(task.id, "ghost-uid", "manager-1")

        assert (await queue.get(task.id)).assignee is None

    @pytest.mark.asyncio
    async def test_terminal_task_cannot_be_assigned(self, coordinator, queue):
        done = await self.completed_task(queue)
        cancelled = await queue.enqueue(draft())
        await queue.transition(cancelled.id, TaskStatus.CANCELLED)

        with pytest.raises(InvalidStateTransition):
            await coordinator.assign(done.id, "emp-1", "manager-1")
        with pytest.raises(InvalidStateTransition):
            await coordinator.take_up(cancelled.id, "emp-1", "emp-1")

    @pytest.mark.asyncio
    async def test_missing_task(self, coordinator):
        with pytest.raises(TaskNotFound):
            await coordinator.assign("nope", "emp-1", "manager-1")

    @pytest.mark.asyncio
    async def test_bulk_assign_reports_partial_success(self, coordinator, queue):
        t1 = await queue.enqueue(draft())
        t2 = await self.completed_task(queue)
        t3 = await queue.enqueue(draft())

        result = await coordinator.bulk_assign([t1.id, t2.id, t3.id], "emp-1", "manager-1")

        assert result.succeeded == [t1.id, t3.id]
        assert result.failed == {t2.id: "INVALID_STATE_TRANSITION"}
        assert result.partial is True
        assert result.ok is False
        assert (await queue.get(t1.id)).assignee == "emp-1"
        assert (await queue.get(t3.id)).assignee == "emp-1"

    @pytest.mark.asyncio
    async def test_bulk_assign_unknown_assignee_fails_every_task(self, coordinator, queue):
        t1 = await queue.enqueue(draft())

        result = await coordinator.bulk_assign([t1.id, "missing"], "ghost-uid", "manager-1")

        assert result.succeeded == []
        assert result.failed == {t1.id: "UNKNOWN_ASSIGNEE", "missing": "UNKNOWN_ASSIGNEE"}
        assert result.partial is False
        assert result.to_dict()["ok"] is False

    @pytest.mark.asyncio
    async def test_route_picks_least_loaded_eligible_candidate(self, coordinator, queue):
        busy = await queue.enqueue(draft())
        await coordinator.assign(busy.id, "emp-1", "manager-1")
        task = await queue.enqueue(draft(candidate_roles=["finance-manager"]))

        assert await coordinator.candidates_for("org-1", ["finance-manager"]) == ["emp-1", "emp-3"]
        assert await coordinator.route(task) == "emp-3"

    @pytest.mark.asyncio
    async def test_route_without_candidates(self, coordinator, queue):
        no_roles = await queue.enqueue(draft(candidate_roles=[]))
        nobody = await queue.enqueue(draft(candidate_roles=["tax-accountant"]))

        assert await coordinator.route(no_roles) is None
        assert await coordinator.route(nobody) is None

    @pytest.mark.asyncio
    async def test_auto_assign_as_system(self, coordinator, queue):
        task = await queue.enqueue(draft(candidate_roles=["hr-manager"]))

        assigned = await coordinator.auto_assign(task)

        assert assigned.assignee == "emp-2"
        assert assigned.assigned_by == SYSTEM_ACTOR

    @pytest.mark.asyncio
    async def test_auto_assign_falls_back_to_entity_owner(self, coordinator, queue):
        task = await queue.enqueue(draft(candidate_roles=[]))

        assigned = await coordinator.auto_assign(task, {"assignedTo": "auth-uid-2"})

        assert assigned.assignee == "emp-2"
        assert assigned.assignment_reason == "entity assignedTo"

    @pytest.mark.asyncio
    async def test_auto_assign_without_route(self, coordinator, queue):
        task = await queue.enqueue(draft(candidate_roles=[]))
        assert await coordinator.auto_assign(task, {}) is None

    async def stale(self, store, config, task):
        await store.update(config.tasks_collection, task.id, {"created_at": LONG_AGO})
        return task

    @pytest.mark.asyncio
    async def test_route_unassigned_assigns_stale_tasks(self, coordinator, queue, store, config, metrics):
        routable = await self.stale(store, config, await queue.enqueue(draft(candidate_roles=["hr-manager"])))
        nobody = await self.stale(store, config, await queue.enqueue(draft(candidate_roles=["tax-accountant"])))
        owned = await self.stale(store, config, await queue.enqueue(draft()))
        await coordinator.assign(owned.id, "emp-1", "manager-1")
        await self.stale(store, config, await self.completed_task(queue))
        fresh = await queue.enqueue(draft(candidate_roles=["hr-manager"]))

        result = await coordinator.route_unassigned("org-1")

        assert result.succeeded == [routable.id]
        assert result.failed == {nobody.id: "NO_ELIGIBLE_ASSIGNEE"}
        assert result.partial is True
        routed = await queue.get(routable.id)
        assert routed.assignee == "emp-2"
        assert routed.assigned_by == SYSTEM_ACTOR
        assert (await queue.get(nobody.id)).assignee is None
        assert (await queue.get(fresh.id)).assignee is None
        assert (await queue.get(owned.id)).assignee == "emp-1"
        assert metrics.sample("unassigned_tasks_routed_total", outcome="assigned") == 1.0
        assert metrics.sample("unassigned_tasks_routed_total", outcome="skipped") == 1.0

    @pytest.mark.asyncio
    async def test_route_unassigned_age_cutoff(self, coordinator, queue):
        await queue.enqueue(draft(candidate_roles=["hr-manager"]))

        result = await coordinator.route_unassigned("org-1", older_than=timedelta(days=1))

        assert result.succeeded == [] and result.failed == {}

    @pytest.mark.asyncio
    async def test_route_unassigned_keeps_concurrent_assignment(self, coordinator, queue, store, config, metrics):
        task = await self.stale(store, config, await queue.enqueue(draft(candidate_roles=["hr-manager"])))
        original_route = coordinator.route

        async def racing_route(candidate):
            await coordinator.assign(candidate.id, "emp-1", "manager-1")
            return await original_route(candidate)

        coordinator.route = racing_route

        result = await coordinator.route_unassigned("org-1")

        assert result.failed == {task.id: "TASK_ALREADY_ASSIGNED"}
        assert (await queue.get(task.id)).assignee == "emp-1"
        assert metrics.sample("unassigned_tasks_routed_total", outcome="skipped") == 1.0

    @pytest.mark.asyncio
    async def test_route_unassigned_batch_limit(self, coordinator, queue, store, config):
        config.unassigned_batch_limit = 2
        for _ in range(3):
            await self.stale(store, config, await queue.enqueue(draft(candidate_roles=["hr-manager"])))

        result = await coordinator.route_unassigned("org-1")

        assert len(result.succeeded) == 2
