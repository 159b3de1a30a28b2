"""Concurrency budget: global project ceiling, per-stage ceilings, pause flag.

The budget is the only place that decides whether one more task may start.
A reservation succeeds only when the queue is not paused, the stage has a
free slot, and either the project already holds a reservation or fewer than
``max_projects`` projects are active. An already active project can take
additional stage slots (prompts and audio in parallel) without counting
against the project ceiling twice.
"""

import logging
import threading
from collections import Counter
from typing import Dict, Optional

from genqueue.config import QueueConfig
from genqueue.orchestrator.state import TaskType

logger = logging.getLogger(__name__)


class SchedulerState:
    """Mutable scheduler state shared by the budget and the dispatcher.

    Injected rather than module-global so several schedulers can coexist
    (one per test). Every read-modify-write happens under ``lock``.
    """

    def __init__(self) -> None:
        self.lock = threading.RLock()
        self.paused = False
        self.stage_counts: Counter = Counter()
        self.project_counts: Counter = Counter()


class ConcurrencyBudget:
    """Enforces max_projects and max_per_stage on processing tasks."""

    def __init__(self, config: QueueConfig, state: Optional[SchedulerState] = None) -> None:
        self.config = config
        self.state = state or SchedulerState()

    # ------------------------------------------------------------------
    # Pause flag
    # ------------------------------------------------------------------

    @property
    def paused(self) -> bool:
        with self.state.lock:
            return self.state.paused

    def pause(self) -> None:
        with self.state.lock:
            self.state.paused = True

    def resume(self) -> None:
        with self.state.lock:
            self.state.paused = False

    # ------------------------------------------------------------------
    # Reservations
    # ------------------------------------------------------------------

    def try_reserve(self, task_type: TaskType, project_id: str) -> bool:
        """Reserve one processing slot for ``task_type`` on behalf of ``project_id``.

        Returns:
            True if the slot was reserved, False if paused or a ceiling is hit
        """
        task_type = TaskType(task_type)
        with self.state.lock:
            if self.state.paused:
                return False
            if self.state.stage_counts[task_type] >= self.config.stage_ceiling(task_type):
                return False
            is_new_project = self.state.project_counts[project_id] == 0
            if is_new_project and self._active_project_count() >= self.config.max_projects:
                return False

            self.state.stage_counts[task_type] += 1
            self.state.project_counts[project_id] += 1
            return True

    def release(self, task_type: TaskType, project_id: str) -> None:
        """Return a slot reserved by try_reserve.

        Releasing a slot that is not held is logged and ignored so counters
        never go negative.
        """
        task_type = TaskType(task_type)
        with self.state.lock:
            if self.state.stage_counts[task_type] <= 0 or self.state.project_counts[project_id] <= 0:
                logger.warning(
                    f"Release without reservation: {task_type.value} for project {project_id}"
                )
                return
            self.state.stage_counts[task_type] -= 1
            self.state.project_counts[project_id] -= 1
            if self.state.stage_counts[task_type] == 0:
                del self.state.stage_counts[task_type]
            if self.state.project_counts[project_id] == 0:
                del self.state.project_counts[project_id]

    def _active_project_count(self) -> int:
        return sum(1 for count in self.state.project_counts.values() if count > 0)

    # ------------------------------------------------------------------
    # Snapshot
    # ------------------------------------------------------------------

    @property
    def active_workers(self) -> int:
        with self.state.lock:
            return sum(self.state.stage_counts.values())

    @property
    def active_projects(self) -> int:
        with self.state.lock:
            return self._active_project_count()

    def stage_workers(self) -> Dict[TaskType, int]:
        """Processing count per stage, zero-filled for every stage type."""
        with self.state.lock:
            return {task_type: self.state.stage_counts[task_type] for task_type in TaskType}

    def update_limits(self, config: QueueConfig) -> None:
        """Swap in new ceilings after a settings change.

        Slots already held stay held; the new ceilings apply to the next
        reservation.
        """
        with self.state.lock:
            self.config = config
        stage_limits = {t.value: c for t, c in config.max_per_stage.items()}
        logger.info(
            f"Concurrency budget updated: max_projects={config.max_projects}, "
            f"max_per_stage={stage_limits}"
        )
