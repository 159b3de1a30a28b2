"""Abstract base class and shared types for stage executors.

A stage executor performs the actual generation call for one task type. The
scheduler hands it a read-only TaskRecord, an async progress callback and a
CancelToken. The executor either returns an ExecutionResult or raises:
TaskCancelled for a cooperative stop, anything else for a failure.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, ClassVar, Dict, Optional

from genqueue.orchestrator.errors import TaskCancelled
from genqueue.orchestrator.state import TaskType
from genqueue.schemas.task import TaskRecord


@dataclass
class ProgressUpdate:
    """Incremental progress reported by an executor.

    ``details`` is the stage's own detail dict (e.g. ``{"total": 12,
    "completed": 3}``); the scheduler stores it under the stage name.
    """

    percentage: Optional[float] = None
    message: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)


ReportProgress = Callable[[ProgressUpdate], Awaitable[None]]


@dataclass
class ExecutionResult:
    """Outcome of one executor call.

    Returning ``success=False`` is equivalent to raising: the task is marked
    failed with ``error`` as its message.
    """

    success: bool = True
    error: Optional[str] = None
    output: Dict[str, Any] = field(default_factory=dict)


class CancelToken:
    """Cooperative cancellation flag checked by executors between units of work."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise TaskCancelled if cancellation was requested."""
        if self._event.is_set():
            raise TaskCancelled(self.reason or "Cancelled")

    async def wait(self) -> None:
        await self._event.wait()


class StageExecutor(ABC):
    """Abstract base class for stage executors.

    Subclasses implement execute(); cancel() is an optional hook for
    executors that can abort an in-flight external call.
    """

    task_type: ClassVar[Optional[TaskType]] = None

    @abstractmethod
    async def execute(
        self,
        task: TaskRecord,
        report_progress: ReportProgress,
        cancel_token: CancelToken,
    ) -> ExecutionResult:
        """Run the stage for one task.

        Args:
            task: Snapshot of the task being executed. ``task.max_workers``
                bounds how many sub-units may run at once
                (see ``FanOutRunner.for_task``).
            report_progress: Awaitable callback for ProgressUpdate values.
            cancel_token: Check ``cancelled`` or call ``raise_if_cancelled()``
                between units of work.

        Returns:
            ExecutionResult describing the outcome.

        Raises:
            TaskCancelled: When stopping after a cancellation signal.
        """
        ...

    async def cancel(self, task_id: str) -> None:
        """Abort in-flight work for ``task_id``; the token is already set."""
        return None
