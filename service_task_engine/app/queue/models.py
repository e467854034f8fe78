"""
Task data models.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class TaskStatus(str, Enum):
    """Task lifecycle status. IN_PROGRESS is the "processing" state."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED})
ACTIVE_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)
OPEN_STATUSES = (TaskStatus.PENDING, TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED)

_SEVERITY_BANDS = {"critical": "P0", "high": "P1", "medium": "P2", "low": "P3"}
_BAND_WEIGHTS = {"P0": 3, "P1": 2, "P2": 1, "P3": 0}


class PriorityBand(str, Enum):
    """Priority band, P0 most urgent."""

    P0 = "P0"
    P1 = "P1"
    P2 = "P2"
    P3 = "P3"

    @property
    def weight(self) -> int:
        return _BAND_WEIGHTS[self.value]

    @classmethod
    def from_severity(cls, severity: Any) -> "PriorityBand":
        value = severity.value if isinstance(severity, Enum) else str(severity)
        return cls(_SEVERITY_BANDS.get(value, "P2"))

    def escalated(self) -> "PriorityBand":
        """One band more urgent; P0 stays P0."""
        order = [PriorityBand.P3, PriorityBand.P2, PriorityBand.P1, PriorityBand.P0]
        return order[min(order.index(self) + 1, len(order) - 1)]


class ChecklistItem(BaseModel):
    """Checklist entry on a task."""

    title: str
    is_required: bool = True
    completed: bool = False
    completed_by: Optional[str] = None
    completed_at: Optional[str] = None


def coerce_checklist(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [{"title": item} if isinstance(item, str) else item for item in value]
    return value


def checklist_progress(items: List[ChecklistItem]) -> int:
    """Percentage of checklist items completed."""
    if not items:
        return 0
    done = sum(1 for item in items if item.completed)
    return round(100 * done / len(items))


class TaskDraft(BaseModel):
    """Everything needed to enqueue a task."""

    org_id: str = Field(..., description="Tenant/organization ID")
    title: str = Field(..., description="Task title")
    description: str = Field(default="", description="Task description")
    priority: PriorityBand = Field(default=PriorityBand.P2, description="Priority band")
    severity: Optional[str] = Field(None, description="Severity of the originating grey area")
    source_module: Optional[str] = Field(None, description="Originating module")
    source_entity_type: Optional[str] = Field(None, description="Originating entity type")
    source_entity_id: Optional[str] = Field(None, description="Originating entity ID")
    rule_id: Optional[str] = Field(None, description="Detection rule that produced the task")
    grey_area_type: Optional[str] = Field(None, description="Grey-area classification")
    candidate_roles: List[str] = Field(default_factory=list, description="Roles that may handle the task")
    checklist: List[ChecklistItem] = Field(default_factory=list, description="Checklist items")
    due_date: Optional[str] = Field(None, description="Explicit due date")
    sla_hours: Optional[float] = Field(None, ge=0, description="Time budget used to derive the due date")
    max_retries: Optional[int] = Field(None, ge=0, description="Retry budget; config default when unset")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form context")

    @field_validator("checklist", mode="before")
    @classmethod
    def normalize_checklist(cls, value: Any) -> Any:
        return coerce_checklist(value)

    def dedup_key(self) -> Optional[str]:
        """De-duplication key; drafts without rule or entity are never de-duplicated."""
        if self.rule_id and self.source_entity_id:
            return f"{self.rule_id}:{self.source_entity_id}"
        return None


class Task(BaseModel):
    """Task model."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(..., description="Unique task ID")
    org_id: str = Field(..., description="Tenant/organization ID")
    title: str = Field(..., description="Task title")
    description: str = Field(default="", description="Task description")
    priority: PriorityBand = Field(..., description="Priority band")
    priority_weight: int = Field(..., description="Sortable weight of the priority band")
    status: TaskStatus = Field(default=TaskStatus.PENDING, description="Current status")
    assignee: Optional[str] = Field(None, description="Canonical personnel ID of the assignee")
    assigned_by: Optional[str] = Field(None, description="Who made the last assignment")
    assigned_at: Optional[str] = Field(None, description="Assignment timestamp")
    assignment_reason: Optional[str] = Field(None, description="Reason given for the assignment")
    created_at: str = Field(..., description="Creation timestamp")
    updated_at: str = Field(..., description="Last update timestamp")
    started_at: Optional[str] = Field(None, description="Start timestamp")
    completed_at: Optional[str] = Field(None, description="Completion or failure timestamp")
    due_date: Optional[str] = Field(None, description="Due date")
    escalated_at: Optional[str] = Field(None, description="When the task was escalated for being overdue")
    checklist: List[ChecklistItem] = Field(default_factory=list, description="Checklist items")
    checklist_progress: int = Field(default=0, ge=0, le=100, description="Checklist completion percentage")
    source_module: Optional[str] = Field(None, description="Originating module")
    source_entity_type: Optional[str] = Field(None, description="Originating entity type")
    source_entity_id: Optional[str] = Field(None, description="Originating entity ID")
    rule_id: Optional[str] = Field(None, description="Detection rule ID")
    grey_area_type: Optional[str] = Field(None, description="Grey-area classification")
    severity: Optional[str] = Field(None, description="Severity")
    candidate_roles: List[str] = Field(default_factory=list, description="Roles that may handle the task")
    retry_count: int = Field(default=0, ge=0, description="Failures consumed")
    max_retries: int = Field(default=3, ge=0, description="Retry budget")
    last_error: Optional[str] = Field(None, description="Last recorded failure")
    sequence: int = Field(default=0, description="Creation order tie-breaker")
    dedup_key: Optional[str] = Field(None, description="Rule/entity de-duplication key")
    history: List[Dict[str, Any]] = Field(default_factory=list, description="Workflow event history")
    metadata: Dict[str, Any] = Field(default_factory=dict, description="Free-form context")
    version: int = Field(default=0, alias="_version", description="Store document version")

    @field_validator("checklist", mode="before")
    @classmethod
    def normalize_checklist(cls, value: Any) -> Any:
        return coerce_checklist(value)

    @model_validator(mode="after")
    def check_invariants(self) -> "Task":
        finished = self.status in (TaskStatus.COMPLETED, TaskStatus.FAILED)
        if finished and not self.completed_at:
            raise ValueError(f"completed_at must be set when status is {self.status.value}")
        if not finished and self.completed_at:
            raise ValueError(f"completed_at must be empty when status is {self.status.value}")
        if self.retry_count > self.max_retries:
            raise ValueError("retry_count cannot exceed max_retries")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_document(cls, doc: Dict[str, Any]) -> "Task":
        return cls.model_validate(doc)

    def to_document(self) -> Dict[str, Any]:
        """Store representation; id and version are managed by the store."""
        return self.model_dump(mode="json", exclude={"id", "version"})

    def to_dict(self) -> Dict[str, Any]:
        """API representation."""
        return self.model_dump(mode="json")
