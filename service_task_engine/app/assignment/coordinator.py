"""
Assignment coordination: assign, reassign, take up, bulk assign,
workload-aware routing of new tasks and re-routing of unassigned ones.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

from shared.config import BaseConfig
from shared.errors import (
    IdentityResolutionDegraded,
    InvalidStateTransition,
    OpsFlowException,
    TaskAlreadyAssigned,
    UnknownAssignee,
)
from shared.logging import get_logger

from ..identity.resolver import IdentityResolver
from ..queue.models import OPEN_STATUSES, Task, TaskStatus
from ..queue.task_queue import QUEUE_ORDER, TaskQueue, isoformat
from ..snapshot import EntitySnapshot
from ..store.base import DocumentStore, QueryFilter
from ..workload.accountant import WorkloadAccountant

SYSTEM_ACTOR = "system"

# Personnel record fields used for routing
ROLES_FIELD = "roles"
ORG_FIELD = "org_id"
EMPLOYMENT_STATUS_FIELD = "employment_status"
ROUTABLE_EMPLOYMENT_STATUSES = ["active", "probation"]

# Entity fields naming an owner when a rule has no candidate roles
ENTITY_OWNER_FIELDS = ("assignedTo", "assigned_to", "ownerId", "owner_id")


@dataclass
class BulkAssignResult:
    """Per-task outcome of a bulk assignment."""
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def partial(self) -> bool:
        return bool(self.succeeded) and bool(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed

    def to_dict(self) -> Dict[str, Any]:
        return {
            "succeeded": list(self.succeeded),
            "failed": dict(self.failed),
            "partial": self.partial,
            "ok": self.ok,
        }


class AssignmentCoordinator:
    """Applies assignment operations to queued tasks."""

    def __init__(self, queue: TaskQueue, resolver: IdentityResolver, accountant: WorkloadAccountant,
                 store: DocumentStore, config: BaseConfig, metrics: Optional[Any] = None):
        self.queue = queue
        self.resolver = resolver
        self.accountant = accountant
        self.store = store
        self.config = config
        self.metrics = metrics
        self.logger = get_logger("task-engine.assignment")

    async def _resolve_assignee(self, assignee_id: str) -> str:
        try:
            return await self.resolver.resolve_strict(assignee_id)
        except IdentityResolutionDegraded:
            raise UnknownAssignee(assignee_id)

    async def _apply(self, task_id: str, assignee_id: str, actor: str, reason: Optional[str],
                     event: str, start: bool = False, unassigned_only: bool = False) -> Task:
        personnel_id = await self._resolve_assignee(assignee_id)

        def apply(task: Task, now: datetime) -> Dict[str, Any]:
            if task.is_terminal:
                requested = TaskStatus.IN_PROGRESS.value if start else task.status.value
                raise InvalidStateTransition(task.id, task.status.value, requested)
            if unassigned_only and task.assignee:
                raise TaskAlreadyAssigned(task.id, task.assignee)
            changes: Dict[str, Any] = {
                "assignee": personnel_id,
                "assigned_by": actor,
                "assigned_at": isoformat(now),
                "assignment_reason": reason,
            }
            if start and task.status is not TaskStatus.IN_PROGRESS:
                changes["status"] = TaskStatus.IN_PROGRESS
                changes["started_at"] = isoformat(now)
            return changes

        def metadata(task: Task) -> Dict[str, Any]:
            return {
                "previous_assignee": task.assignee,
                "assignee": personnel_id,
                "requested_assignee": assignee_id,
                "actor": actor,
                "reason": reason,
            }

        task = await self.queue.mutate(task_id, apply, event, metadata)

        if self.metrics:
            self.metrics.record_business_event(f"task_{event}")
        self.logger.info(
            "Task assignment updated",
            task_id=task_id,
            action=event,
            assignee=personnel_id,
            actor=actor,
            status=task.status.value
        )
        return task

    async def assign(self, task_id: str, assignee_id: str, assigned_by: str,
                     reason: Optional[str] = None) -> Task:
        """Set the assignee without changing status."""
        return await self._apply(task_id, assignee_id, assigned_by, reason, "assigned")

    async def reassign(self, task_id: str, new_assignee_id: str, reassigned_by: str,
                       reason: Optional[str] = None) -> Task:
        """Move a task to another person; the previous assignee is kept in history."""
        return await self._apply(task_id, new_assignee_id, reassigned_by, reason, "reassigned")

    async def take_up(self, task_id: str, new_assignee_id: str, taken_by: str,
                      reason: Optional[str] = None) -> Task:
        """Reassign and start work in one step."""
        return await self._apply(task_id, new_assignee_id, taken_by, reason, "taken_up", start=True)

    async def bulk_assign(self, task_ids: Iterable[str], assignee_id: str, assigned_by: str,
                          reason: Optional[str] = None) -> BulkAssignResult:
        """Assign each task independently and report failures per task."""
        result = BulkAssignResult()
        ids = list(dict.fromkeys(task_ids))

        try:
            personnel_id = await self._resolve_assignee(assignee_id)
        except UnknownAssignee as e:
            result.failed = {task_id: e.code for task_id in ids}
            return result

        for task_id in ids:
            try:
                await self.assign(task_id, personnel_id, assigned_by, reason)
                result.succeeded.append(task_id)
            except OpsFlowException as e:
                result.failed[task_id] = e.code
                self.logger.warning("Bulk assignment item failed", task_id=task_id, code=e.code)

        self.logger.info(
            "Bulk assignment finished",
            assignee=personnel_id,
            succeeded=len(result.succeeded),
            failed=len(result.failed)
        )
        return result

    async def candidates_for(self, org_id: str, roles: Iterable[str]) -> List[str]:
        """Routable personnel in an org holding any of the roles."""
        found: Dict[str, Mapping] = {}
        for role in dict.fromkeys(roles):
            docs = await self.store.query(self.config.personnel_collection, [
                QueryFilter(ROLES_FIELD, "array_contains", role),
                QueryFilter(ORG_FIELD, "==", org_id),
                QueryFilter(EMPLOYMENT_STATUS_FIELD, "in", ROUTABLE_EMPLOYMENT_STATUSES),
            ])
            for doc in docs:
                found[doc["id"]] = doc
        return sorted(found)

    async def route(self, task: Task) -> Optional[str]:
        """Least-loaded candidate for a task, or None when nobody holds its roles.

        Capacity is advisory: an overloaded best candidate is still returned.
        """
        if not task.candidate_roles:
            return None

        candidates = await self.candidates_for(task.org_id, task.candidate_roles)
        if not candidates:
            self.logger.info("No routing candidates", task_id=task.id, roles=task.candidate_roles)
            return None

        ranked = await self.accountant.rank(candidates)
        best = ranked[0]
        if best.is_overloaded:
            self.logger.warning(
                "Routing to overloaded assignee",
                task_id=task.id,
                assignee=best.personnel_id,
                utilization=best.utilization
            )
        return best.personnel_id

    async def auto_assign(self, task: Task, entity: Optional[Mapping] = None,
                          unassigned_only: bool = False) -> Optional[Task]:
        """Route a new task and assign it as the system actor.

        With ``unassigned_only`` the write is rejected with TaskAlreadyAssigned
        when someone assigned the task after it was read.
        """
        assignee = await self.route(task)
        reason = "workload routing"

        if assignee is None and not task.candidate_roles and entity is not None:
            snapshot = EntitySnapshot.of(entity)
            for owner_field in ENTITY_OWNER_FIELDS:
                owner = snapshot.resolve(owner_field)
                if isinstance(owner, str) and owner:
                    assignee = owner
                    reason = f"entity {owner_field}"
                    break

        if assignee is None:
            return None
        return await self._apply(task.id, assignee, SYSTEM_ACTOR, reason, "assigned",
                                 unassigned_only=unassigned_only)

    async def route_unassigned(self, org_id: str, older_than: Optional[timedelta] = None) -> BulkAssignResult:
        """Retry routing for open tasks that are still unassigned after ``older_than``.

        Tasks nobody can take are reported as NO_ELIGIBLE_ASSIGNEE and stay
        unassigned for the next sweep.
        """
        if older_than is None:
            older_than = timedelta(minutes=self.config.unassigned_retry_after_minutes)
        cutoff = self.queue.clock() - older_than

        docs = await self.store.query(self.queue.collection, [
            QueryFilter("org_id", "==", org_id),
            QueryFilter("status", "in", [s.value for s in OPEN_STATUSES]),
            QueryFilter("assignee", "==", None),
            QueryFilter("created_at", "<", isoformat(cutoff)),
        ], QUEUE_ORDER, self.config.unassigned_batch_limit)

        result = BulkAssignResult()
        for doc in docs:
            task = Task.from_document(doc)
            try:
                assigned = await self.auto_assign(task, unassigned_only=True)
            except OpsFlowException as e:
                result.failed[task.id] = e.code
                outcome = "skipped" if isinstance(e, TaskAlreadyAssigned) else "failed"
                self.logger.warning("Unassigned task routing failed", task_id=task.id, code=e.code)
            else:
                if assigned is None:
                    result.failed[task.id] = "NO_ELIGIBLE_ASSIGNEE"
                    outcome = "skipped"
                else:
                    result.succeeded.append(task.id)
                    outcome = "assigned"
            if self.metrics:
                self.metrics.increment_counter("unassigned_tasks_routed_total", outcome=outcome)

        self.logger.info(
            "Unassigned routing sweep finished",
            org_id=org_id,
            checked=len(docs),
            assigned=len(result.succeeded),
            unrouted=len(result.failed)
        )
        return result
