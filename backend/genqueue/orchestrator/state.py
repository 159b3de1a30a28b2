"""State machine constants and transition logic for queue tasks.

Defines the closed set of stage types, the task status lifecycle and the
transitions the dispatcher is allowed to perform. Every status write in the
task store goes through ``check_transition`` so an illegal move (for example
``completed -> processing``) is rejected before it reaches the database.
"""

from enum import Enum
from typing import Dict, FrozenSet

from genqueue.orchestrator.errors import InvalidTransition


class TaskType(str, Enum):
    """Generation stage performed by one queue task."""

    PROMPTS = "prompts"
    IMAGES = "images"
    AUDIO = "audio"
    SUBTITLES = "subtitles"


class TaskStatus(str, Enum):
    """Lifecycle status of one queue task."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# Allowed transitions. failed -> pending is reachable only through retry_task.
TRANSITIONS: Dict[TaskStatus, FrozenSet[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.PROCESSING, TaskStatus.CANCELLED}),
    TaskStatus.PROCESSING: frozenset(
        {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
    ),
    TaskStatus.FAILED: frozenset({TaskStatus.PENDING}),
    TaskStatus.COMPLETED: frozenset(),
    TaskStatus.CANCELLED: frozenset(),
}

TERMINAL_STATES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED}
)

# Predecessor outcomes that short-circuit a dependent task to cancelled
BLOCKING_STATES = frozenset({TaskStatus.FAILED, TaskStatus.CANCELLED})


def can_transition(current: TaskStatus, target: TaskStatus) -> bool:
    """Check if a task may move from ``current`` to ``target``.

    Args:
        current: Status the task holds now
        target: Requested status

    Returns:
        True if the move is part of the lifecycle, False otherwise
    """
    return TaskStatus(target) in TRANSITIONS[TaskStatus(current)]


def check_transition(task_id: str, current: TaskStatus, target: TaskStatus) -> None:
    """Raise InvalidTransition unless ``current -> target`` is allowed."""
    if not can_transition(current, target):
        raise InvalidTransition(
            f"Task {task_id}: cannot move from {TaskStatus(current).value} "
            f"to {TaskStatus(target).value}"
        )


def is_terminal(status: TaskStatus) -> bool:
    """Return True for completed, failed and cancelled."""
    return TaskStatus(status) in TERMINAL_STATES
