"""
Task lifecycle state machine.

    pending -> in_progress -> completed
    pending -> blocked -> pending
    in_progress -> failed (retry budget permitting, back to pending)
    pending | in_progress | blocked -> cancelled

completed, failed and cancelled are terminal.
"""

from typing import Dict, FrozenSet, Union

from .models import TERMINAL_STATUSES, TaskStatus

ALLOWED_TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED, TaskStatus.CANCELLED}),
    TaskStatus.IN_PROGRESS: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}),
    TaskStatus.BLOCKED: frozenset({TaskStatus.PENDING, TaskStatus.CANCELLED}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.FAILED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}


def can_transition(current: Union[TaskStatus, str], requested: Union[TaskStatus, str]) -> bool:
    return TaskStatus(requested) in ALLOWED_TRANSITIONS[TaskStatus(current)]


def is_terminal(status: Union[TaskStatus, str]) -> bool:
    return TaskStatus(status) in TERMINAL_STATUSES
