"""
Task engine facade.

Wires the store, rule catalog, rule engine, task queue, identity resolver,
workload accountant and assignment coordinator into the operations the
HTTP service exposes.
"""

from datetime import datetime, timedelta
from typing import Any, AsyncIterator, Dict, Iterable, List, Mapping, Optional, Sequence

from shared.config import BaseConfig
from shared.errors import DuplicateTaskSuppressed, OpsFlowException, ValidationError
from shared.logging import get_logger, set_user_context

from .assignment.coordinator import AssignmentCoordinator, BulkAssignResult
from .identity.resolver import IdentityResolver
from .queue.models import PriorityBand, Task, TaskDraft
from .queue.task_queue import TaskQueue
from .rules.catalog import RuleCatalog, default_catalog, load_catalog_file
from .rules.engine import RuleEngine
from .rules.models import RuleMatch
from .snapshot import EntitySnapshot
from .store.base import DocumentStore
from .store.memory import InMemoryDocumentStore
from .store.redis_store import RedisDocumentStore
from .workload.accountant import WorkloadAccountant, WorkloadSnapshot

# Business module per rule id prefix, used when the event type carries none
RULE_PREFIX_MODULES = {
    "fin": "finance",
    "hr": "hr",
    "cust": "customer",
    "ops": "operations",
    "comp": "compliance",
    "ai": "ai",
    "wf": "workflow",
}


def source_module_for(rule_id: str, snapshot: EntitySnapshot, event_type: Optional[str]) -> str:
    """Originating business module of a detected grey area."""
    for key in ("sourceModule", "source_module"):
        value = snapshot.resolve(key)
        if isinstance(value, str) and value:
            return value
    if event_type and "." in event_type:
        return event_type.split(".", 1)[0]
    return RULE_PREFIX_MODULES.get(rule_id.split("_", 1)[0], "grey_area")


class TaskEngine:
    """Entry point for events, queue reads and task operations."""

    def __init__(self, store: DocumentStore, catalog: RuleCatalog, config: BaseConfig,
                 metrics: Optional[Any] = None):
        self.store = store
        self.config = config
        self.metrics = metrics
        self.logger = get_logger("task-engine.engine")

        self.rule_engine = RuleEngine(catalog, metrics)
        self.queue = TaskQueue(store, config, metrics)
        self.resolver = IdentityResolver(store, config, metrics)
        self.accountant = WorkloadAccountant(store, self.resolver, config)
        self.coordinator = AssignmentCoordinator(
            self.queue, self.resolver, self.accountant, store, config, metrics
        )

        if metrics:
            metrics.set_gauge("catalog_version", catalog.version)

    async def start(self):
        if isinstance(self.store, RedisDocumentStore):
            await self.store.start()
        self.logger.info(
            "Task engine started",
            store_backend=type(self.store).__name__,
            catalog_version=self.rule_engine.version,
            rules=len(self.rule_engine.catalog)
        )

    async def close(self):
        await self.store.close()
        self.logger.info("Task engine stopped")

    # Events

    def build_draft(self, match: RuleMatch, entity_type: str, snapshot: EntitySnapshot,
                    entity_id: Optional[str], org_id: str, event_type: Optional[str]) -> TaskDraft:
        rule = match.rule
        return TaskDraft(
            org_id=org_id,
            title=match.title,
            description=match.description,
            priority=PriorityBand.from_severity(rule.severity),
            severity=rule.severity.value,
            source_module=source_module_for(rule.rule_id, snapshot, event_type),
            source_entity_type=entity_type,
            source_entity_id=entity_id,
            rule_id=rule.rule_id,
            grey_area_type=rule.grey_area_type,
            candidate_roles=list(rule.assign_to_roles),
            checklist=list(rule.checklist),
            sla_hours=rule.sla_hours,
            metadata={
                "catalog_version": match.catalog_version,
                "rule_name": rule.name,
                "event_type": event_type,
            },
        )

    async def submit_event(self, entity_type: str, entity: Mapping,
                           event_type: Optional[str] = None,
                           entity_id: Optional[str] = None,
                           org_id: Optional[str] = None) -> List[str]:
        """Run the rules against an entity and enqueue a task per match.

        Returns the ids of the tasks created. Duplicates of open tasks are
        left out; store failures propagate.
        """
        snapshot = EntitySnapshot.of(entity)
        event_type = event_type or snapshot.event_type()
        entity_id = entity_id or snapshot.entity_id()
        org_id = org_id or snapshot.org_id() or self.config.default_org_id
        set_user_context(org_id=org_id)

        report = self.rule_engine.evaluate(snapshot, entity_type, event_type)

        created: List[str] = []
        for match in report.matches:
            draft = self.build_draft(match, entity_type, snapshot, entity_id, org_id, event_type)
            try:
                task = await self.queue.enqueue(draft)
            except DuplicateTaskSuppressed:
                continue
            created.append(task.id)

            if self.config.auto_assign:
                try:
                    await self.coordinator.auto_assign(task, snapshot)
                except OpsFlowException as e:
                    self.logger.warning(
                        "Automatic assignment failed",
                        task_id=task.id,
                        code=e.code,
                        message=e.message
                    )

        self.logger.info(
            "Event processed",
            entity_type=entity_type,
            entity_id=entity_id,
            event_type=event_type,
            matched=len(report.matches),
            created=len(created),
            skipped_rules=report.skipped_rules
        )
        return created

    # Queue

    async def get_task(self, task_id: str) -> Task:
        return await self.queue.get(task_id)

    async def get_queue_slice(self, org_id: str,
                              statuses: Optional[Sequence[Any]] = None,
                              assignee: Optional[str] = None,
                              priorities: Optional[Sequence[Any]] = None,
                              source_module: Optional[str] = None,
                              limit: Optional[int] = None) -> List[Task]:
        if assignee:
            assignee = await self.resolver.resolve(assignee)
        return await self.queue.get_queue_slice(org_id, statuses, assignee, priorities, source_module, limit)

    async def subscribe_queue(self, org_id: str,
                              statuses: Optional[Sequence[Any]] = None,
                              assignee: Optional[str] = None,
                              priorities: Optional[Sequence[Any]] = None,
                              source_module: Optional[str] = None,
                              limit: Optional[int] = None) -> AsyncIterator[List[Task]]:
        if assignee:
            assignee = await self.resolver.resolve(assignee)
        async for snapshot in self.queue.subscribe(org_id, statuses, assignee, priorities, source_module, limit):
            yield snapshot

    async def dequeue_batch(self, org_id: str, limit: int = 10) -> List[Task]:
        return await self.queue.dequeue_batch(org_id, limit)

    async def transition_task(self, task_id: str, new_status: Any, error: Optional[str] = None) -> Task:
        return await self.queue.transition(task_id, new_status, error)

    async def retry_task(self, task_id: str, extend_by: int = 0) -> Task:
        return await self.queue.retry(task_id, extend_by)

    async def update_checklist_item(self, task_id: str, index: int, completed: bool, user_id: str) -> Task:
        return await self.queue.update_checklist_item(task_id, index, completed, user_id)

    async def escalate_overdue(self, org_id: str, now: Optional[datetime] = None) -> List[Task]:
        return await self.queue.escalate_overdue(org_id, now)

    # Assignment

    async def assign(self, task_id: str, assignee_id: str, assigned_by: str,
                     reason: Optional[str] = None) -> Task:
        return await self.coordinator.assign(task_id, assignee_id, assigned_by, reason)

    async def reassign(self, task_id: str, new_assignee_id: str, reassigned_by: str,
                       reason: Optional[str] = None) -> Task:
        return await self.coordinator.reassign(task_id, new_assignee_id, reassigned_by, reason)

    async def take_up(self, task_id: str, new_assignee_id: str, taken_by: str,
                      reason: Optional[str] = None) -> Task:
        return await self.coordinator.take_up(task_id, new_assignee_id, taken_by, reason)

    async def bulk_assign(self, task_ids: Iterable[str], assignee_id: str, assigned_by: str,
                          reason: Optional[str] = None) -> BulkAssignResult:
        return await self.coordinator.bulk_assign(task_ids, assignee_id, assigned_by, reason)

    async def route_unassigned(self, org_id: str, older_than: Optional[timedelta] = None) -> BulkAssignResult:
        return await self.coordinator.route_unassigned(org_id, older_than)

    async def get_workload_snapshot(self, personnel_ids: Sequence[str]) -> Dict[str, WorkloadSnapshot]:
        return await self.accountant.snapshot(personnel_ids)

    # Rules

    def reload_catalog(self, catalog: Optional[RuleCatalog] = None) -> RuleCatalog:
        """Swap the rule catalog; without one, re-read the configured source."""
        if catalog is None:
            source = load_rule_catalog(self.config, self.metrics)
            catalog = RuleCatalog(source.rules, version=self.rule_engine.version + 1)
        elif catalog.version <= self.rule_engine.version:
            raise ValidationError(
                "Catalog version must increase",
                {"current": self.rule_engine.version, "proposed": catalog.version},
            )
        self.rule_engine.reload(catalog)
        return catalog

    def set_rule_enabled(self, rule_id: str, enabled: bool) -> RuleCatalog:
        catalog = self.rule_engine.catalog.with_rule_enabled(rule_id, enabled)
        self.rule_engine.reload(catalog)
        self.logger.info("Rule toggled", rule_id=rule_id, enabled=enabled, catalog_version=catalog.version)
        return catalog


def load_rule_catalog(config: BaseConfig, metrics: Optional[Any] = None) -> RuleCatalog:
    """Catalog from ``rules_file`` when configured, otherwise the built-in rules."""
    if config.rules_file:
        return load_catalog_file(config.rules_file, metrics=metrics)
    return default_catalog()


def create_store(config: BaseConfig) -> DocumentStore:
    backend = config.store_backend.lower()
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "redis":
        return RedisDocumentStore(config.redis_url, key_prefix=config.redis_key_prefix)
    raise ValidationError("Unknown store backend", {"store_backend": config.store_backend})


def create_engine(config: BaseConfig, metrics: Optional[Any] = None,
                  store: Optional[DocumentStore] = None) -> TaskEngine:
    """Build a task engine for the configured store backend and rule source."""
    return TaskEngine(store or create_store(config), load_rule_catalog(config, metrics), config, metrics)
