"""
Persistent, priority-ordered task queue.

Tasks live in the store's tasks collection. Every write is a
compare-and-swap on the document version and is retried when it loses a
race. De-duplication uses a guard document per (rule, entity) pair,
claimed with the store's conditional create before the task is written
and released when the task reaches a terminal status.
"""

import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Tuple, Union

from shared.config import BaseConfig
from shared.errors import (
    ConcurrentModificationError,
    DuplicateTaskSuppressed,
    InvalidStateTransition,
    RetryExhausted,
    TaskNotFound,
    ValidationError,
)
from shared.logging import get_logger
from shared.retry import RetryConfig, retry_on_exception

from ..store.base import DocumentStore, OrderBy, QueryFilter
from .models import (
    ACTIVE_STATUSES,
    ChecklistItem,
    PriorityBand,
    Task,
    TaskDraft,
    TaskStatus,
    checklist_progress,
)
from .state_machine import can_transition, is_terminal

# A guard whose task never appeared is considered abandoned after this long
STALE_GUARD_SECONDS = 300

QUEUE_ORDER = (
    OrderBy("priority_weight", descending=True),
    OrderBy("created_at"),
    OrderBy("sequence"),
)

Mutator = Callable[[Task, datetime], Dict[str, Any]]
# History metadata, or a function computing it from the task before the change
Metadata = Union[Dict[str, Any], Callable[[Task], Dict[str, Any]]]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def isoformat(moment: datetime) -> str:
    """Fixed-width ISO-8601 so that string order equals time order."""
    return moment.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO-8601 string to an aware datetime; naive values are taken as UTC."""
    if not isinstance(value, str):
        return None
    try:
        moment = datetime.fromisoformat(value)
    except ValueError:
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def history_entry(event: str, moment: datetime, metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"event": event, "timestamp": isoformat(moment), "metadata": metadata or {}}


class TaskQueue:
    """Task queue over a document store."""

    def __init__(self, store: DocumentStore, config: BaseConfig, metrics: Optional[Any] = None,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.config = config
        self.metrics = metrics
        self.clock = clock
        self.collection = config.tasks_collection
        self.dedup_collection = config.dedup_collection
        self.logger = get_logger("task-engine.queue")
        self._retry_config = RetryConfig(
            max_attempts=config.transition_max_attempts,
            base_delay=0.005,
            max_delay=0.1,
        )
        self._last_sequence = 0

    def _next_sequence(self) -> int:
        self._last_sequence = max(time.time_ns(), self._last_sequence + 1)
        return self._last_sequence

    def _due_date(self, draft: TaskDraft, now: datetime) -> Optional[str]:
        if draft.due_date:
            return draft.due_date
        hours = draft.sla_hours
        if hours is None and draft.severity:
            hours = self.config.default_sla_hours.get(draft.severity)
        if hours is None:
            return None
        return isoformat(now + timedelta(hours=hours))

    # Enqueue and de-duplication

    async def enqueue(self, draft: TaskDraft) -> Task:
        """Create a pending task, suppressing duplicates for the same rule and entity."""
        now = self.clock()
        task_id = uuid.uuid4().hex
        dedup_key = draft.dedup_key()

        if dedup_key:
            await self._claim_guard(dedup_key, task_id, draft.rule_id, draft.source_entity_id, now)

        max_retries = draft.max_retries if draft.max_retries is not None else self.config.default_max_retries
        task = Task(
            id=task_id,
            org_id=draft.org_id,
            title=draft.title,
            description=draft.description,
            priority=draft.priority,
            priority_weight=draft.priority.weight,
            status=TaskStatus.PENDING,
            created_at=isoformat(now),
            updated_at=isoformat(now),
            due_date=self._due_date(draft, now),
            checklist=draft.checklist,
            checklist_progress=checklist_progress(draft.checklist),
            source_module=draft.source_module,
            source_entity_type=draft.source_entity_type,
            source_entity_id=draft.source_entity_id,
            rule_id=draft.rule_id,
            grey_area_type=draft.grey_area_type,
            severity=draft.severity,
            candidate_roles=draft.candidate_roles,
            retry_count=0,
            max_retries=max_retries,
            sequence=self._next_sequence(),
            dedup_key=dedup_key,
            history=[history_entry("created", now, {"rule_id": draft.rule_id, "source_module": draft.source_module})],
            metadata=draft.metadata,
            version=1,
        )

        try:
            await self.store.create(self.collection, task.to_document(), doc_id=task_id)
        except Exception:
            if dedup_key:
                await self._release_guard(dedup_key, task_id)
            raise

        if self.metrics:
            self.metrics.increment_counter("tasks_enqueued_total", source_module=draft.source_module or "unknown")
            self.metrics.record_business_event("task_enqueued")

        self.logger.info(
            "Task enqueued",
            task_id=task_id,
            org_id=draft.org_id,
            priority=draft.priority.value,
            rule_id=draft.rule_id,
            source_entity_id=draft.source_entity_id
        )
        return task

    async def _claim_guard(self, key: str, task_id: str, rule_id: Optional[str],
                           entity_id: Optional[str], now: datetime, requeue: bool = False):
        guard = {"task_id": task_id, "rule_id": rule_id, "entity_id": entity_id, "claimed_at": isoformat(now)}

        if await self.store.create_if_absent(self.dedup_collection, key, guard):
            return

        existing = await self.store.get(self.dedup_collection, key)
        if existing is None:
            # Released between our two reads
            if await self.store.create_if_absent(self.dedup_collection, key, guard):
                return
            existing = await self.store.get(self.dedup_collection, key)
            if existing is None:
                self._suppressed(rule_id, entity_id, None, requeue)

        owner_id = existing.get("task_id")
        if owner_id == task_id:
            return
        owner = await self.store.get(self.collection, owner_id) if owner_id else None

        if owner is None:
            claimed_at = existing.get("claimed_at")
            abandoned = (
                claimed_at is not None
                and (now - datetime.fromisoformat(claimed_at)).total_seconds() > STALE_GUARD_SECONDS
            )
            if not abandoned:
                # Owner is still being written
                self._suppressed(rule_id, entity_id, owner_id, requeue)
        elif not is_terminal(owner["status"]):
            self._suppressed(rule_id, entity_id, owner_id, requeue)

        try:
            await self.store.update(self.dedup_collection, key, guard, expected_version=existing["_version"])
        except ConcurrentModificationError:
            current = await self.store.get(self.dedup_collection, key)
            self._suppressed(rule_id, entity_id, current.get("task_id") if current else None, requeue)

        self.logger.info("Took over released de-duplication guard", key=key, previous_task_id=owner_id)

    def _suppressed(self, rule_id: Optional[str], entity_id: Optional[str], existing_task_id: Optional[str],
                    requeue: bool = False):
        # A re-queue is never suppressed; retry() reports the conflict itself
        if not requeue:
            if self.metrics:
                self.metrics.increment_counter("duplicate_tasks_suppressed_total", rule_id=rule_id or "none")
            self.logger.info(
                "Duplicate task suppressed",
                rule_id=rule_id,
                entity_id=entity_id,
                existing_task_id=existing_task_id
            )
        raise DuplicateTaskSuppressed(rule_id or "", entity_id or "", existing_task_id)

    async def _release_guard(self, key: str, task_id: str):
        guard = await self.store.get(self.dedup_collection, key)
        if guard is None or guard.get("task_id") != task_id:
            return
        try:
            await self.store.delete(self.dedup_collection, key, expected_version=guard["_version"])
        except ConcurrentModificationError:
            self.logger.debug("De-duplication guard changed hands before release", key=key, task_id=task_id)

    # Reads

    async def get(self, task_id: str) -> Task:
        doc = await self.store.get(self.collection, task_id)
        if doc is None:
            raise TaskNotFound(task_id)
        return Task.from_document(doc)

    async def dequeue_batch(self, org_id: str, limit: int = 10) -> List[Task]:
        """Pending and in-progress tasks, highest priority first, oldest first within a band."""
        return await self.get_queue_slice(org_id, statuses=ACTIVE_STATUSES, limit=limit)

    def _slice_filters(self, org_id: str,
                       statuses: Optional[Sequence[Any]] = None,
                       assignee: Optional[str] = None,
                       priorities: Optional[Sequence[Any]] = None,
                       source_module: Optional[str] = None) -> List[QueryFilter]:
        filters = [QueryFilter("org_id", "==", org_id)]
        if statuses:
            filters.append(QueryFilter("status", "in", [TaskStatus(s).value for s in statuses]))
        if assignee:
            filters.append(QueryFilter("assignee", "==", assignee))
        if priorities:
            filters.append(QueryFilter("priority", "in", [PriorityBand(p).value for p in priorities]))
        if source_module:
            filters.append(QueryFilter("source_module", "==", source_module))
        return filters

    async def get_queue_slice(self, org_id: str,
                              statuses: Optional[Sequence[Any]] = None,
                              assignee: Optional[str] = None,
                              priorities: Optional[Sequence[Any]] = None,
                              source_module: Optional[str] = None,
                              limit: Optional[int] = None) -> List[Task]:
        filters = self._slice_filters(org_id, statuses, assignee, priorities, source_module)
        docs = await self.store.query(self.collection, filters, QUEUE_ORDER, limit)
        return [Task.from_document(doc) for doc in docs]

    async def subscribe(self, org_id: str,
                        statuses: Optional[Sequence[Any]] = None,
                        assignee: Optional[str] = None,
                        priorities: Optional[Sequence[Any]] = None,
                        source_module: Optional[str] = None,
                        limit: Optional[int] = None) -> AsyncIterator[List[Task]]:
        """Full ordered snapshot now and after every change to the queue."""
        filters = self._slice_filters(org_id, statuses, assignee, priorities, source_module)
        async for docs in self.store.subscribe(self.collection, filters, QUEUE_ORDER, limit):
            yield [Task.from_document(doc) for doc in docs]

    # Writes

    async def _mutate(self, task_id: str, mutator: Mutator, event: str,
                      metadata: Optional[Metadata] = None) -> Tuple[Task, Task]:
        @retry_on_exception((ConcurrentModificationError,), self._retry_config)
        async def attempt() -> Tuple[Task, Task]:
            current = await self.get(task_id)
            now = self.clock()
            changes = mutator(current, now)

            entry_metadata = dict((metadata(current) if callable(metadata) else metadata) or {})
            new_status = changes.get("status")
            if new_status is not None and TaskStatus(new_status) is not current.status:
                entry_metadata.setdefault("from_status", current.status.value)
                entry_metadata.setdefault("to_status", TaskStatus(new_status).value)

            values = current.model_dump(by_alias=True)
            values.update(changes)
            values["updated_at"] = isoformat(now)
            values["history"] = current.history + [history_entry(event, now, entry_metadata)]
            updated = Task.model_validate(values)

            doc = await self.store.update(
                self.collection, task_id, updated.to_document(), expected_version=current.version
            )
            return current, Task.from_document(doc)

        return await attempt()

    async def mutate(self, task_id: str, mutator: Mutator, event: str,
                     metadata: Optional[Metadata] = None) -> Task:
        """Apply a change computed from the latest task state, retried on write conflicts."""
        previous, updated = await self._mutate(task_id, mutator, event, metadata)
        await self._after_write(previous, updated)
        return updated

    async def _after_write(self, previous: Task, updated: Task):
        if previous.status is updated.status:
            return
        if self.metrics:
            self.metrics.increment_counter(
                "task_transitions_total",
                from_status=previous.status.value,
                to_status=updated.status.value
            )
        if updated.is_terminal and updated.dedup_key:
            await self._release_guard(updated.dedup_key, updated.id)

    async def transition(self, task_id: str, new_status: Any, error: Optional[str] = None) -> Task:
        """Move a task through the lifecycle.

        A failure reported for an in-progress task consumes one retry. The
        task goes back to pending while retries remain, and otherwise ends
        in failed with the error kept for triage.
        """
        requested = TaskStatus(new_status)

        def apply(task: Task, now: datetime) -> Dict[str, Any]:
            if not can_transition(task.status, requested):
                raise InvalidStateTransition(task.id, task.status.value, requested.value)

            stamp = isoformat(now)
            if requested is TaskStatus.IN_PROGRESS:
                return {"status": requested, "started_at": stamp}
            if requested is TaskStatus.COMPLETED:
                return {"status": requested, "completed_at": stamp}
            if requested is TaskStatus.FAILED:
                retry_count = task.retry_count + 1
                if retry_count < task.max_retries:
                    return {"status": TaskStatus.PENDING, "retry_count": retry_count, "last_error": error}
                return {
                    "status": TaskStatus.FAILED,
                    "retry_count": min(retry_count, task.max_retries),
                    "last_error": error,
                    "completed_at": stamp,
                }
            return {"status": requested}

        event = "failure_recorded" if requested is TaskStatus.FAILED else "status_changed"
        previous, updated = await self._mutate(task_id, apply, event, {"error": error} if error else None)

        if updated.status is TaskStatus.FAILED:
            self.logger.error(
                "Task retries exhausted",
                task_id=task_id,
                retry_count=updated.retry_count,
                max_retries=updated.max_retries,
                error=error
            )
            if self.metrics:
                self.metrics.increment_counter("retries_exhausted_total")
        else:
            self.logger.info(
                "Task transitioned",
                task_id=task_id,
                from_status=previous.status.value,
                to_status=updated.status.value,
                retry_count=updated.retry_count
            )

        await self._after_write(previous, updated)
        return updated

    async def retry(self, task_id: str, extend_by: int = 0) -> Task:
        """Re-queue a failed task.

        ``extend_by`` raises the retry budget first; without it a task that
        consumed its whole budget stays failed and RetryExhausted is raised.
        """

        def apply(task: Task, now: datetime) -> Dict[str, Any]:
            if task.status is not TaskStatus.FAILED:
                raise InvalidStateTransition(task.id, task.status.value, TaskStatus.PENDING.value)
            max_retries = task.max_retries + max(extend_by, 0)
            if task.retry_count >= max_retries:
                raise RetryExhausted(task.id, task.retry_count, max_retries)
            return {
                "status": TaskStatus.PENDING,
                "max_retries": max_retries,
                "last_error": None,
                "completed_at": None,
            }

        try:
            previous, updated = await self._mutate(task_id, apply, "requeued", {"extend_by": extend_by})
        except RetryExhausted as e:
            self.logger.warning("Retry rejected, budget exhausted", task_id=task_id, details=e.details)
            raise

        if updated.dedup_key:
            try:
                await self._claim_guard(
                    updated.dedup_key, updated.id, updated.rule_id, updated.source_entity_id,
                    self.clock(), requeue=True
                )
            except DuplicateTaskSuppressed as e:
                # Human re-queue wins; both tasks stay open and are reported
                self.logger.warning(
                    "Re-queued task shares its rule and entity with another open task",
                    task_id=task_id,
                    other_task_id=e.existing_task_id,
                    dedup_key=updated.dedup_key
                )
                if self.metrics:
                    self.metrics.increment_counter("duplicate_open_tasks_total", rule_id=updated.rule_id or "none")

        if self.metrics:
            self.metrics.increment_counter(
                "task_transitions_total",
                from_status=previous.status.value,
                to_status=updated.status.value
            )
        self.logger.info("Task re-queued", task_id=task_id, max_retries=updated.max_retries)
        return updated

    async def update_checklist_item(self, task_id: str, index: int, completed: bool, user_id: str) -> Task:
        """Mark a checklist item done or not done."""

        def apply(task: Task, now: datetime) -> Dict[str, Any]:
            if task.is_terminal:
                raise InvalidStateTransition(task.id, task.status.value, task.status.value)
            if index < 0 or index >= len(task.checklist):
                raise ValidationError(
                    "Checklist item index out of range",
                    {"task_id": task.id, "index": index, "items": len(task.checklist)},
                )
            items: List[ChecklistItem] = [item.model_copy() for item in task.checklist]
            items[index] = items[index].model_copy(update={
                "completed": completed,
                "completed_by": user_id if completed else None,
                "completed_at": isoformat(now) if completed else None,
            })
            return {"checklist": items, "checklist_progress": checklist_progress(items)}

        return await self.mutate(
            task_id, apply, "checklist_updated", {"index": index, "completed": completed, "user_id": user_id}
        )

    # Sweeps

    def escalation_threshold_hours(self, band: PriorityBand) -> float:
        return self.config.overdue_escalation_hours.get(band.value, self.config.default_escalation_hours)

    async def escalate_overdue(self, org_id: str, now: Optional[datetime] = None) -> List[Task]:
        """Raise the band of active tasks overdue past their band's threshold.

        A task is escalated at most once; ``escalated_at`` marks it, and the
        check is repeated inside the compare-and-swap write so concurrent
        sweeps cannot escalate the same task twice.
        """
        now = now or self.clock()
        docs = await self.store.query(self.collection, [
            QueryFilter("org_id", "==", org_id),
            QueryFilter("status", "in", [s.value for s in ACTIVE_STATUSES]),
            QueryFilter("due_date", "<", isoformat(now)),
        ], QUEUE_ORDER)

        escalated: List[Task] = []
        for doc in docs:
            if doc.get("escalated_at"):
                continue
            due = parse_timestamp(doc["due_date"])
            if due is None:
                self.logger.warning(
                    "Unparseable due date, not escalating",
                    task_id=doc["id"],
                    due_date=doc["due_date"]
                )
                continue
            overdue_hours = (now - due).total_seconds() / 3600
            if overdue_hours < self.escalation_threshold_hours(PriorityBand(doc["priority"])):
                continue

            def apply(task: Task, moment: datetime) -> Dict[str, Any]:
                if task.escalated_at or task.status not in ACTIVE_STATUSES:
                    raise InvalidStateTransition(task.id, task.status.value, task.status.value)
                band = task.priority.escalated()
                return {"priority": band, "priority_weight": band.weight, "escalated_at": isoformat(now)}

            def describe(task: Task, hours: float = overdue_hours) -> Dict[str, Any]:
                return {
                    "reason": "overdue",
                    "escalated_by": "system",
                    "overdue_hours": round(hours, 1),
                    "from_priority": task.priority.value,
                    "to_priority": task.priority.escalated().value,
                }

            try:
                previous, updated = await self._mutate(doc["id"], apply, "escalated", describe)
            except (InvalidStateTransition, TaskNotFound):
                self.logger.debug("Task changed before escalation", task_id=doc["id"])
                continue

            escalated.append(updated)
            if self.metrics:
                self.metrics.increment_counter(
                    "tasks_escalated_total",
                    from_priority=previous.priority.value,
                    to_priority=updated.priority.value
                )
            self.logger.info(
                "Overdue task escalated",
                task_id=updated.id,
                from_priority=previous.priority.value,
                to_priority=updated.priority.value,
                overdue_hours=round(overdue_hours, 1)
            )

        self.logger.info("Escalation sweep complete", org_id=org_id, checked=len(docs), escalated=len(escalated))
        return escalated
