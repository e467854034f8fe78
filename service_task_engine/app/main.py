"""
Task engine service for OpsFlow.
Turns business events into prioritized, de-duplicated and routed tasks.
"""

import json
import sys
import os
from datetime import timedelta
from typing import Any, Dict, List, Optional

# Add shared directory to path
sys.path.append(os.path.join(os.path.dirname(__file__), '..', '..'))

from fastapi import Query, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from shared.base_service import BaseService
from shared.errors import ValidationError
from shared.logging import set_user_context

from .engine import TaskEngine, create_engine
from .queue.models import PriorityBand, TaskStatus


class EventRequest(BaseModel):
    """Business event submitted for grey-area detection."""
    entity_type: str = Field(..., description="Entity type, e.g. transaction")
    entity: Dict[str, Any] = Field(..., description="Entity snapshot")
    event_type: Optional[str] = Field(None, description="Event type; read from the entity when omitted")
    entity_id: Optional[str] = Field(None, description="Entity ID; read from the entity when omitted")
    org_id: Optional[str] = Field(None, description="Organization ID; read from the entity when omitted")


class TransitionRequest(BaseModel):
    status: TaskStatus = Field(..., description="Requested status")
    error: Optional[str] = Field(None, description="Failure detail when reporting a failure")


class RetryRequest(BaseModel):
    extend_by: int = Field(default=0, ge=0, description="Additional retries granted")


class AssignRequest(BaseModel):
    assignee_id: str = Field(..., description="Personnel or external user ID")
    actor: str = Field(..., description="User performing the assignment")
    reason: Optional[str] = Field(None, description="Reason for the assignment")


class BulkAssignRequest(AssignRequest):
    task_ids: List[str] = Field(..., min_length=1, description="Tasks to assign")


class ChecklistUpdateRequest(BaseModel):
    completed: bool = Field(..., description="Whether the item is done")
    user_id: str = Field(..., description="User updating the item")


class WorkloadRequest(BaseModel):
    personnel_ids: List[str] = Field(..., min_length=1, description="Personnel to report on")


def _parse_statuses(values: Optional[List[str]]) -> Optional[List[TaskStatus]]:
    if not values:
        return None
    try:
        return [TaskStatus(v) for v in values]
    except ValueError:
        raise ValidationError("Unknown task status", {"status": values})


def _parse_priorities(values: Optional[List[str]]) -> Optional[List[PriorityBand]]:
    if not values:
        return None
    try:
        return [PriorityBand(v) for v in values]
    except ValueError:
        raise ValidationError("Unknown priority band", {"priority": values})


class TaskEngineService(BaseService):
    """Task engine service implementation."""

    def __init__(self, engine: Optional[TaskEngine] = None):
        super().__init__("task-engine", 8020)

        self.engine = engine or create_engine(self.config, self.metrics)

        @self.app.on_event("startup")
        async def _startup():
            await self.engine.start()

        @self.app.on_event("shutdown")
        async def _shutdown():
            await self.engine.close()

        self._setup_task_engine_routes()

    def _setup_task_engine_routes(self):
        """Set up task engine routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "task-engine",
                "message": "OpsFlow - Task Engine Service",
                "version": "1.0.0",
                "capabilities": ["grey_area_detection", "task_queue", "workload_routing"],
                "catalog_version": self.engine.rule_engine.version
            }

        @self.app.post("/events")
        async def submit_event(request: EventRequest):
            """Evaluate an event and enqueue tasks for matching rules."""
            task_ids = await self.engine.submit_event(
                request.entity_type,
                request.entity,
                event_type=request.event_type,
                entity_id=request.entity_id,
                org_id=request.org_id
            )
            return {"task_ids": task_ids, "created": len(task_ids)}

        @self.app.get("/queue/{org_id}")
        async def get_queue(
            org_id: str,
            status: Optional[List[str]] = Query(None, description="Filter by status"),
            assignee: Optional[str] = Query(None, description="Filter by assignee"),
            priority: Optional[List[str]] = Query(None, description="Filter by priority band"),
            source_module: Optional[str] = Query(None, description="Filter by source module"),
            limit: Optional[int] = Query(None, ge=1, le=1000, description="Maximum tasks")
        ):
            """Ordered slice of an organization's queue."""
            tasks = await self.engine.get_queue_slice(
                org_id,
                statuses=_parse_statuses(status),
                assignee=assignee,
                priorities=_parse_priorities(priority),
                source_module=source_module,
                limit=limit
            )
            return {"org_id": org_id, "tasks": [t.to_dict() for t in tasks], "count": len(tasks)}

        @self.app.get("/queue/{org_id}/next")
        async def next_batch(org_id: str, limit: int = Query(10, ge=1, le=100)):
            """Next pending and in-progress tasks in priority order."""
            tasks = await self.engine.dequeue_batch(org_id, limit)
            return {"org_id": org_id, "tasks": [t.to_dict() for t in tasks]}

        @self.app.post("/queue/{org_id}/escalate")
        async def escalate_overdue(org_id: str):
            """Raise the band of overdue tasks past their escalation threshold."""
            tasks = await self.engine.escalate_overdue(org_id)
            return {"org_id": org_id, "escalated": [t.id for t in tasks], "count": len(tasks)}

        @self.app.post("/queue/{org_id}/route-unassigned")
        async def route_unassigned(
            org_id: str,
            older_than_minutes: Optional[int] = Query(None, ge=0, description="Minimum age of the tasks to route")
        ):
            """Retry workload routing for tasks still waiting for an assignee."""
            older_than = timedelta(minutes=older_than_minutes) if older_than_minutes is not None else None
            result = await self.engine.route_unassigned(org_id, older_than)
            return {"org_id": org_id, **result.to_dict()}

        @self.app.get("/queue/{org_id}/stream")
        async def stream_queue(
            org_id: str,
            request: Request,
            status: Optional[List[str]] = Query(None),
            assignee: Optional[str] = Query(None),
            priority: Optional[List[str]] = Query(None),
            source_module: Optional[str] = Query(None),
            limit: Optional[int] = Query(None, ge=1, le=1000)
        ):
            """Server-Sent Events: the full ordered slice now and after every change."""
            statuses = _parse_statuses(status)
            priorities = _parse_priorities(priority)

            async def events():
                async for tasks in self.engine.subscribe_queue(
                    org_id, statuses, assignee, priorities, source_module, limit
                ):
                    if await request.is_disconnected():
                        break
                    payload = json.dumps({"org_id": org_id, "tasks": [t.to_dict() for t in tasks]})
                    yield f"event: snapshot\ndata: {payload}\n\n"

            return StreamingResponse(events(), media_type="text/event-stream")

        @self.app.post("/tasks/bulk-assign")
        async def bulk_assign(request: BulkAssignRequest):
            """Assign several tasks, reporting failures per task."""
            set_user_context(user_id=request.actor)
            result = await self.engine.bulk_assign(
                request.task_ids, request.assignee_id, request.actor, request.reason
            )
            return result.to_dict()

        @self.app.get("/tasks/{task_id}")
        async def get_task(task_id: str):
            task = await self.engine.get_task(task_id)
            return task.to_dict()

        @self.app.post("/tasks/{task_id}/transition")
        async def transition_task(task_id: str, request: TransitionRequest):
            """Move a task through its lifecycle."""
            task = await self.engine.transition_task(task_id, request.status, request.error)
            return task.to_dict()

        @self.app.post("/tasks/{task_id}/retry")
        async def retry_task(task_id: str, request: Optional[RetryRequest] = None):
            """Re-queue a failed task."""
            extend_by = request.extend_by if request else 0
            task = await self.engine.retry_task(task_id, extend_by)
            return task.to_dict()

        @self.app.post("/tasks/{task_id}/assign")
        async def assign_task(task_id: str, request: AssignRequest):
            set_user_context(user_id=request.actor)
            task = await self.engine.assign(task_id, request.assignee_id, request.actor, request.reason)
            return task.to_dict()

        @self.app.post("/tasks/{task_id}/reassign")
        async def reassign_task(task_id: str, request: AssignRequest):
            set_user_context(user_id=request.actor)
            task = await self.engine.reassign(task_id, request.assignee_id, request.actor, request.reason)
            return task.to_dict()

        @self.app.post("/tasks/{task_id}/take-up")
        async def take_up_task(task_id: str, request: AssignRequest):
            """Reassign to a new person and start work immediately."""
            set_user_context(user_id=request.actor)
            task = await self.engine.take_up(task_id, request.assignee_id, request.actor, request.reason)
            return task.to_dict()

        @self.app.post("/tasks/{task_id}/checklist/{index}")
        async def update_checklist_item(task_id: str, index: int, request: ChecklistUpdateRequest):
            set_user_context(user_id=request.user_id)
            task = await self.engine.update_checklist_item(task_id, index, request.completed, request.user_id)
            return task.to_dict()

        @self.app.post("/workload")
        async def workload(request: WorkloadRequest):
            """Workload snapshot per person."""
            snapshots = await self.engine.get_workload_snapshot(request.personnel_ids)
            return {"workload": {pid: snap.to_dict() for pid, snap in snapshots.items()}}

        @self.app.get("/rules")
        async def list_rules(entity_type: Optional[str] = Query(None, description="Filter by entity type")):
            """Current rule catalog."""
            catalog = self.engine.rule_engine.catalog
            rules = [r for r in catalog.rules if entity_type is None or entity_type in r.entity_types]
            return {
                "version": catalog.version,
                "rules": [r.to_dict() for r in rules],
                "stats": catalog.stats()
            }

        @self.app.post("/rules/{rule_id}/enable")
        async def enable_rule(rule_id: str):
            catalog = self.engine.set_rule_enabled(rule_id, True)
            return {"rule_id": rule_id, "enabled": True, "catalog_version": catalog.version}

        @self.app.post("/rules/{rule_id}/disable")
        async def disable_rule(rule_id: str):
            catalog = self.engine.set_rule_enabled(rule_id, False)
            return {"rule_id": rule_id, "enabled": False, "catalog_version": catalog.version}

        @self.app.post("/rules/reload")
        async def reload_rules():
            """Re-read the configured rule source."""
            catalog = self.engine.reload_catalog()
            return {"catalog_version": catalog.version, "rules": len(catalog)}

        @self.app.post("/identity/cache/clear")
        async def clear_identity_cache():
            cleared = self.engine.resolver.clear_cache()
            return {"cleared": cleared}

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check the document store."""
        healthy = await self.engine.store.ping()
        if not healthy:
            raise RuntimeError("document store unreachable")
        return {"store": "ok"}


def create_app():
    """Create task engine service application."""
    service = TaskEngineService()
    return service.app


if __name__ == "__main__":
    service = TaskEngineService()
    service.run()
