"""
Per-person workload accounting.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from shared.config import BaseConfig
from shared.logging import get_logger

from ..identity.resolver import IdentityResolver
from ..queue.models import OPEN_STATUSES, TaskStatus
from ..queue.task_queue import isoformat, utc_now
from ..snapshot import MISSING, resolve_path
from ..store.base import DocumentStore, QueryFilter, is_number

_OPEN = {s.value for s in OPEN_STATUSES}


@dataclass
class WorkloadSnapshot:
    """Point-in-time task counts for one person."""
    personnel_id: str
    capacity: int
    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    blocked: int = 0
    overdue: int = 0
    has_record: bool = True

    @property
    def active(self) -> int:
        return self.pending + self.in_progress

    @property
    def utilization(self) -> int:
        """Uncapped; above 100 signals overload."""
        return round(100 * self.active / self.capacity) if self.capacity > 0 else 0

    @property
    def display_utilization(self) -> int:
        return min(self.utilization, 100)

    @property
    def is_overloaded(self) -> bool:
        return self.utilization > 100

    @property
    def availability(self) -> str:
        if self.utilization > 100:
            return "overloaded"
        if self.utilization >= 80:
            return "busy"
        return "available"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "personnel_id": self.personnel_id,
            "pending": self.pending,
            "in_progress": self.in_progress,
            "completed": self.completed,
            "blocked": self.blocked,
            "overdue": self.overdue,
            "active": self.active,
            "capacity": self.capacity,
            "utilization": self.utilization,
            "display_utilization": self.display_utilization,
            "is_overloaded": self.is_overloaded,
            "availability": self.availability,
            "has_record": self.has_record,
        }


def _batches(values: Sequence[str], size: int) -> Iterable[List[str]]:
    for start in range(0, len(values), size):
        yield list(values[start:start + size])


def rank_candidates(snapshots: Union[Mapping[str, WorkloadSnapshot], Iterable[WorkloadSnapshot]],
                    exclude: Iterable[str] = ()) -> List[WorkloadSnapshot]:
    """Least loaded first: utilization, then active count, then id."""
    if isinstance(snapshots, Mapping):
        snapshots = snapshots.values()
    excluded = set(exclude)
    return sorted(
        (s for s in snapshots if s.personnel_id not in excluded),
        key=lambda s: (s.utilization, s.active, s.personnel_id)
    )


class WorkloadAccountant:
    """Computes workload snapshots with batched store queries."""

    def __init__(self, store: DocumentStore, resolver: IdentityResolver, config: BaseConfig,
                 clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.resolver = resolver
        self.config = config
        self.clock = clock
        self.logger = get_logger("task-engine.workload")

    def _capacity(self, record: Optional[Mapping]) -> int:
        if record is not None:
            value = resolve_path(record, self.config.capacity_field)
            if value is not MISSING and is_number(value) and value > 0:
                return int(value)
        return self.config.default_max_concurrent

    async def _fetch_personnel(self, ids: Sequence[str]) -> Dict[str, Dict[str, Any]]:
        records: Dict[str, Dict[str, Any]] = {}
        for batch in _batches(ids, self.config.query_batch_size):
            for doc in await self.store.query(
                self.config.personnel_collection, [QueryFilter("id", "in", batch)]
            ):
                records[doc["id"]] = doc
        return records

    def _completed_filters(self) -> List[QueryFilter]:
        filters = [QueryFilter("status", "==", TaskStatus.COMPLETED.value)]
        if self.config.completed_window_days:
            cutoff = self.clock() - timedelta(days=self.config.completed_window_days)
            filters.append(QueryFilter("completed_at", ">=", isoformat(cutoff)))
        return filters

    async def _fetch_tasks(self, assignees: Sequence[str]) -> List[Dict[str, Any]]:
        # Open tasks are never truncated; completed ones only within the window
        selections = (
            [QueryFilter("status", "in", sorted(_OPEN))],
            self._completed_filters(),
        )
        tasks: Dict[str, Dict[str, Any]] = {}
        for batch in _batches(assignees, self.config.query_batch_size):
            for filters in selections:
                docs = await self.store.query(
                    self.config.tasks_collection,
                    [QueryFilter("assignee", "in", batch)] + filters,
                )
                for doc in docs:
                    tasks[doc["id"]] = doc
        return list(tasks.values())

    async def snapshot(self, personnel_ids: Sequence[str]) -> Dict[str, WorkloadSnapshot]:
        """Workload per requested person, counting tasks assigned under any of their ids."""
        ids = list(dict.fromkeys(personnel_ids))
        if not ids:
            return {}

        records = await self._fetch_personnel(ids)
        snapshots = {
            pid: WorkloadSnapshot(pid, capacity=self._capacity(records.get(pid)), has_record=pid in records)
            for pid in ids
        }

        query_ids = set(ids)
        for pid, record in records.items():
            linked = resolve_path(record, self.config.identity_link_field)
            if isinstance(linked, str) and linked:
                query_ids.add(linked)
            query_ids.update(self.resolver.aliases_for(pid))

        tasks = await self._fetch_tasks(sorted(query_ids))

        canonical: Dict[str, str] = {}
        for assignee in {t["assignee"] for t in tasks}:
            canonical[assignee] = await self.resolver.resolve(assignee)

        now = isoformat(self.clock())
        for task in tasks:
            snap = snapshots.get(canonical[task["assignee"]])
            if snap is None:
                continue
            status = task.get("status")
            if status == TaskStatus.PENDING.value:
                snap.pending += 1
            elif status == TaskStatus.IN_PROGRESS.value:
                snap.in_progress += 1
            elif status == TaskStatus.COMPLETED.value:
                snap.completed += 1
            elif status == TaskStatus.BLOCKED.value:
                snap.blocked += 1
            due = task.get("due_date")
            if status in _OPEN and isinstance(due, str) and due < now:
                snap.overdue += 1

        self.logger.debug(
            "Workload snapshot computed",
            personnel=len(ids),
            query_ids=len(query_ids),
            tasks=len(tasks)
        )
        return snapshots

    async def rank(self, personnel_ids: Sequence[str], exclude: Iterable[str] = ()) -> List[WorkloadSnapshot]:
        return rank_candidates(await self.snapshot(personnel_ids), exclude)
