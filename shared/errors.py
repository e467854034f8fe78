"""
Shared error handling for the OpsFlow task engine.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class OpsFlowException(Exception):
    """Base exception for OpsFlow services."""

    status_code: int = 400

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class ValidationError(OpsFlowException):
    """Validation-related errors."""

    status_code = 422

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class NotFoundError(OpsFlowException):
    """Requested document does not exist."""

    status_code = 404

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class StoreUnavailableError(OpsFlowException):
    """Persistence backend could not be reached."""

    status_code = 503

    def __init__(self, backend: str, message: str = "Store unavailable", details: Optional[Dict[str, Any]] = None):
        super().__init__("STORE_UNAVAILABLE", f"{backend}: {message}", details)


class ConcurrentModificationError(OpsFlowException):
    """A compare-and-swap write lost against a concurrent writer."""

    status_code = 409

    def __init__(self, collection: str, doc_id: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(
            "CONCURRENT_MODIFICATION",
            f"{collection}/{doc_id} changed concurrently",
            {"expected_version": expected_version, "actual_version": actual_version},
        )


# Task engine error taxonomy

class ConditionEvaluationSkipped(OpsFlowException):
    """A rule or condition is malformed and was skipped."""

    status_code = 422

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("CONDITION_EVALUATION_SKIPPED", message, details)


class DuplicateTaskSuppressed(OpsFlowException):
    """An open task already exists for the same rule and entity."""

    status_code = 200

    def __init__(self, rule_id: str, entity_id: str, existing_task_id: Optional[str]):
        self.existing_task_id = existing_task_id
        super().__init__(
            "DUPLICATE_TASK_SUPPRESSED",
            f"Open task already exists for rule {rule_id} and entity {entity_id}",
            {"rule_id": rule_id, "entity_id": entity_id, "existing_task_id": existing_task_id},
        )


class RetryExhausted(OpsFlowException):
    """Task has consumed its retry budget."""

    status_code = 409

    def __init__(self, task_id: str, retry_count: int, max_retries: int):
        super().__init__(
            "RETRY_EXHAUSTED",
            f"Task {task_id} has exhausted its retries ({retry_count}/{max_retries})",
            {"task_id": task_id, "retry_count": retry_count, "max_retries": max_retries},
        )


class UnknownAssignee(OpsFlowException):
    """Assignee does not resolve to a personnel record."""

    status_code = 422

    def __init__(self, assignee_id: str):
        super().__init__(
            "UNKNOWN_ASSIGNEE",
            f"No personnel record for assignee {assignee_id}",
            {"assignee_id": assignee_id},
        )


class TaskAlreadyAssigned(OpsFlowException):
    """Task picked up an assignee before an unassigned-only write landed."""

    status_code = 409

    def __init__(self, task_id: str, assignee: str):
        super().__init__(
            "TASK_ALREADY_ASSIGNED",
            f"Task {task_id} is already assigned to {assignee}",
            {"task_id": task_id, "assignee": assignee},
        )


class InvalidStateTransition(OpsFlowException):
    """Requested status change is not allowed from the current status."""

    status_code = 409

    def __init__(self, task_id: str, current: str, requested: str):
        super().__init__(
            "INVALID_STATE_TRANSITION",
            f"Task {task_id} cannot move from {current} to {requested}",
            {"task_id": task_id, "current": current, "requested": requested},
        )


class TaskNotFound(NotFoundError):
    """Task does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found", {"task_id": task_id})
        self.code = "TASK_NOT_FOUND"


class IdentityResolutionDegraded(OpsFlowException):
    """No personnel record matched; the raw external id would be used."""

    status_code = 422

    def __init__(self, external_id: str, email: Optional[str] = None):
        super().__init__(
            "IDENTITY_RESOLUTION_DEGRADED",
            f"Could not resolve {external_id} to a personnel record",
            {"external_id": external_id, "email": email},
        )
