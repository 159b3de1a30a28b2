"""Intra-task fan-out: run N sub-units of one task with bounded parallelism.

Used by stages that generate many independent units (images, prompt batches).
At most ``max_workers`` units are in flight; after each unit a ProgressUpdate
with done/failed/total and the live worker count is reported. The done count
is reported under the stage's own detail key: ``generated`` for prompts,
``completed`` for images. Failed units are recorded and skipped. If every unit
fails the task fails.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Generic, List, Optional, Sequence, TypeVar

from genqueue.executors.base import CancelToken, ProgressUpdate, ReportProgress
from genqueue.orchestrator.errors import ExecutionError, TaskCancelled
from genqueue.orchestrator.progress import SUB_UNIT_KEYS
from genqueue.orchestrator.state import TaskType
from genqueue.schemas.task import TaskRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


@dataclass
class FanOutResult(Generic[R]):
    """Per-unit outcomes, indexed like the input units."""

    total: int
    results: Dict[int, R] = field(default_factory=dict)
    errors: Dict[int, str] = field(default_factory=dict)

    @property
    def completed(self) -> int:
        return len(self.results)

    @property
    def failed(self) -> int:
        return len(self.errors)

    @property
    def failed_indices(self) -> List[int]:
        return sorted(self.errors)


class FanOutRunner:
    """Runs sub-units under a semaphore and reports aggregated progress."""

    def __init__(
        self,
        max_workers: int,
        report_progress: ReportProgress,
        cancel_token: CancelToken,
        unit_name: str = "units",
        done_key: str = "completed",
    ):
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.max_workers = max_workers
        self.report_progress = report_progress
        self.cancel_token = cancel_token
        self.unit_name = unit_name
        self.done_key = done_key
        self.active_workers = 0
        self._lock = asyncio.Lock()

    @classmethod
    def for_task(
        cls,
        task: TaskRecord,
        report_progress: ReportProgress,
        cancel_token: CancelToken,
    ) -> "FanOutRunner":
        """Runner bounded by the task's worker ceiling, reporting its stage's detail keys."""
        task_type = TaskType(task.task_type)
        done_key = SUB_UNIT_KEYS.get(task_type, ("completed", "total"))[0]
        return cls(
            task.max_workers,
            report_progress,
            cancel_token,
            unit_name=task_type.value,
            done_key=done_key,
        )

    def _details(self, outcome: FanOutResult, current: Optional[Any] = None) -> Dict[str, Any]:
        done = outcome.completed + outcome.failed
        details: Dict[str, Any] = {
            "status": "complete" if done >= outcome.total else "generating",
            "total": outcome.total,
            self.done_key: outcome.completed,
            "failed": outcome.failed,
            "active_workers": self.active_workers,
            "max_workers": self.max_workers,
        }
        if current is not None:
            details["current_file"] = str(current)
        return details

    async def _report(self, outcome: FanOutResult, current: Optional[Any] = None) -> None:
        message = f"Generated {outcome.completed} of {outcome.total} {self.unit_name}"
        if outcome.failed:
            message += f" ({outcome.failed} failed)"
        await self.report_progress(
            ProgressUpdate(
                percentage=100 * outcome.completed / outcome.total if outcome.total else 0,
                message=message,
                details=self._details(outcome, current),
            )
        )

    async def run(
        self,
        units: Sequence[T],
        worker: Callable[[int, T], Awaitable[R]],
    ) -> FanOutResult[R]:
        """Run ``worker(index, unit)`` for every unit.

        Raises:
            TaskCancelled: If the token was set; in-flight units finish, the rest are skipped
            ExecutionError: If there were units and every one of them failed
        """
        outcome: FanOutResult[R] = FanOutResult(total=len(units))
        semaphore = asyncio.Semaphore(self.max_workers)
        await self._report(outcome)

        async def run_unit(index: int, unit: T) -> None:
            async with semaphore:
                if self.cancel_token.cancelled:
                    return
                async with self._lock:
                    self.active_workers += 1
                try:
                    result = await worker(index, unit)
                except TaskCancelled:
                    return
                except Exception as e:
                    logger.error(f"{self.unit_name} {index + 1}/{outcome.total} failed: {type(e).__name__}: {e}")
                    async with self._lock:
                        outcome.errors[index] = str(e)
                else:
                    async with self._lock:
                        outcome.results[index] = result
                finally:
                    async with self._lock:
                        self.active_workers -= 1
                await self._report(outcome, current=unit)

        await asyncio.gather(*(run_unit(i, unit) for i, unit in enumerate(units)))

        self.cancel_token.raise_if_cancelled()
        if outcome.total and outcome.failed == outcome.total:
            raise ExecutionError(f"All {outcome.total} {self.unit_name} failed")
        return outcome
