"""Scheduler: the dispatch loop and the operator-facing queue API.

Coordinates the task store, the concurrency budget, the stage executors and
the event bus:
- Selection: pending tasks whose predecessor completed (or who have none), in
  priority then creation order, admitted while the budget has room
- Admission: compare-and-transition pending -> processing, then the executor
  runs as its own asyncio task
- Completion: terminal transition, slot release, cascade-cancel of dependents
  on failure or cancel, immediate re-selection
- Pause: gates admission only; running tasks finish on their own

Every status write for a task happens under that task's asyncio.Lock and is a
compare-and-transition in the store, so a completion and a user cancel never
both apply. Executor errors are recorded on the task and never escape the loop.
"""

import asyncio
import logging
import traceback
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from genqueue.config import QueueConfig
from genqueue.db.models import QueueTask
from genqueue.executors.base import CancelToken, ExecutionResult, ProgressUpdate, StageExecutor
from genqueue.executors.registry import ExecutorRegistry
from genqueue.orchestrator.budget import ConcurrencyBudget, SchedulerState
from genqueue.orchestrator.errors import (
    DependencyFailure,
    ExecutionError,
    InvalidTransition,
    ProjectNotFound,
    RetryRejected,
    TaskCancelled,
)
from genqueue.orchestrator.events import Event, EventBus, EventKind, Subscription
from genqueue.orchestrator.graph import normalize_stages, resolve_stages
from genqueue.orchestrator.progress import normalize_task_progress, project_progress
from genqueue.orchestrator.state import BLOCKING_STATES, TaskStatus, TaskType
from genqueue.schemas.task import (
    STAGE_DETAIL_MODELS,
    ProjectProgress,
    ProjectRecord,
    QueueStats,
    TaskRecord,
)
from genqueue.services.task_store import TaskStore

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"


@dataclass
class RunningTask:
    """Bookkeeping for one task this scheduler admitted."""

    task_id: str
    project_id: str
    task_type: TaskType
    token: CancelToken
    handle: Optional[asyncio.Task] = None
    executor: Optional[StageExecutor] = None


@dataclass
class Outcome:
    status: TaskStatus
    error: Optional[str] = None
    error_stack: Optional[str] = None
    output: Dict[str, Any] = field(default_factory=dict)


class Scheduler:
    """Pipeline task scheduler over a TaskStore and an ExecutorRegistry.

    Args:
        store: Durable task store
        registry: Stage executor per TaskType
        config: Queue ceilings and dispatch parameters
        state: Shared pause flag and counters (a fresh one if omitted)
        bus: Event bus for notifications (a fresh one if omitted)
    """

    def __init__(
        self,
        store: TaskStore,
        registry: ExecutorRegistry,
        config: QueueConfig,
        state: Optional[SchedulerState] = None,
        bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config
        self.state = state or SchedulerState()
        self.budget = ConcurrencyBudget(config, self.state)
        self.bus = bus or EventBus()

        self._task_locks: Dict[str, asyncio.Lock] = {}
        self._running: Dict[str, RunningTask] = {}
        self._dispatch_lock = asyncio.Lock()
        self._wake = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None
        self._stopping = False
        # Set on admission, consumed by the pipeline_complete check
        self._drain_armed = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        """Recover orphaned tasks and start the dispatch loop."""
        if self.running:
            return
        self._stopping = False
        if self.config.recover_orphans_on_start:
            await self.store.reset_processing()
        self._loop_task = asyncio.create_task(self._run_loop(), name="genqueue-dispatch")
        logger.info(
            f"Scheduler started (max_projects={self.config.max_projects}, "
            f"paused={self.budget.paused})"
        )
        await self._dispatch()

    async def stop(self) -> None:
        """Stop the loop and abort in-flight executors.

        Tasks interrupted here stay processing in the store and are returned
        to pending by orphan recovery on the next start. Subscriptions are
        kept, so a stopped scheduler can be started again.
        """
        self._stopping = True
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        handles = [entry.handle for entry in self._running.values() if entry.handle]
        for handle in handles:
            handle.cancel()
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)
        self.bus.suspend()
        logger.info(f"Scheduler stopped ({len(handles)} in-flight tasks interrupted)")

    def wake(self) -> None:
        """Request a selection pass on the next loop iteration."""
        self._wake.set()

    async def _run_loop(self) -> None:
        while True:
            try:
                await asyncio.wait_for(self._wake.wait(), timeout=self.config.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake.clear()
            try:
                await self._dispatch()
            except Exception:
                logger.exception("Dispatch pass failed; retrying on next tick")

    async def wait_until_idle(self, timeout: Optional[float] = None) -> None:
        """Dispatch until nothing is processing and no admissible task remains.

        Pending tasks that cannot start (paused, or waiting on a task that
        never runs) are left pending.
        """

        async def _drain() -> None:
            while True:
                await self._dispatch()
                handles = [entry.handle for entry in self._running.values() if entry.handle]
                if not handles:
                    break
                await asyncio.wait(handles)
            await self.bus.drain()

        await asyncio.wait_for(_drain(), timeout)

    def update_limits(self, config: QueueConfig) -> None:
        self.config = config
        self.budget.update_limits(config)
        self.wake()

    def _lock(self, task_id: str) -> asyncio.Lock:
        lock = self._task_locks.get(task_id)
        if lock is None:
            lock = self._task_locks[task_id] = asyncio.Lock()
        return lock

    def _forget_lock(self, task_id: str) -> None:
        """Drop a task's lock unless it is held; the next user creates a fresh one."""
        lock = self._task_locks.get(task_id)
        if lock is not None and not lock.locked():
            del self._task_locks[task_id]

    # ------------------------------------------------------------------
    # Selection and admission
    # ------------------------------------------------------------------

    async def _dispatch(self) -> int:
        """One selection pass. Returns the number of tasks admitted."""
        async with self._dispatch_lock:
            admitted = 0
            for task, predecessor_status in await self.store.list_pending():
                if predecessor_status is not None and TaskStatus(predecessor_status) in BLOCKING_STATES:
                    await self._cancel_blocked(task, TaskStatus(predecessor_status))
                    continue
                if predecessor_status is not None and predecessor_status != TaskStatus.COMPLETED.value:
                    continue
                if task.id in self._running:
                    continue
                if not self.budget.try_reserve(task.task_type, task.project_id):
                    continue
                if await self._admit(task):
                    admitted += 1
            return admitted

    async def _admit(self, task: QueueTask) -> bool:
        task_type = TaskType(task.task_type)
        async with self._lock(task.id):
            started = await self.store.transition(task.id, TaskStatus.PENDING, TaskStatus.PROCESSING)
            if started is not None:
                entry = RunningTask(
                    task_id=task.id,
                    project_id=task.project_id,
                    task_type=task_type,
                    token=CancelToken(),
                )
                record = TaskRecord.model_validate(started).model_copy(
                    update={"max_workers": self.config.worker_ceiling(task_type)}
                )
                self._running[task.id] = entry
                self._drain_armed = True
                entry.handle = asyncio.create_task(
                    self._run_task(record, entry),
                    name=f"genqueue-{task_type.value}-{task.id[:8]}",
                )

        if started is None:
            # Cancelled or deleted between selection and admission
            self.budget.release(task_type, task.project_id)
            self._forget_lock(task.id)
            return False

        logger.info(
            f"Admitted {task_type.value} task {task.id} for project {task.project_id} "
            f"(attempt {started.attempts})"
        )
        self._publish_status(task.id, task.project_id, TaskStatus.PROCESSING)
        await self._refresh_project(task.project_id)
        return True

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _run_task(self, record: TaskRecord, entry: RunningTask) -> None:
        outcome = await self._execute(record, entry)
        try:
            await self._finish(record, entry, outcome)
        except Exception:
            logger.exception(f"Failed to record outcome of task {record.id}")

    async def _execute(self, record: TaskRecord, entry: RunningTask) -> Outcome:
        """Run the executor and map its result to a terminal status. Never raises
        except for asyncio cancellation (shutdown or project deletion)."""
        timeout = self.config.stage_timeout(entry.task_type)
        try:
            executor = self.registry.get(entry.task_type)
            entry.executor = executor
            call = executor.execute(record, self._progress_reporter(entry), entry.token)
            if timeout is not None:
                try:
                    result = await asyncio.wait_for(call, timeout)
                except asyncio.TimeoutError:
                    await self._call_cancel_hook(entry)
                    raise ExecutionError(
                        f"{entry.task_type.value} executor timed out after {timeout}s"
                    ) from None
            else:
                result = await call
            if isinstance(result, ExecutionResult) and not result.success:
                raise ExecutionError(result.error or f"{entry.task_type.value} executor reported failure")
        except asyncio.CancelledError:
            self.budget.release(entry.task_type, entry.project_id)
            self._running.pop(entry.task_id, None)
            self._forget_lock(entry.task_id)
            if not self._stopping:
                self._check_drained()
            raise
        except TaskCancelled as e:
            return Outcome(TaskStatus.CANCELLED, error=str(e) or entry.token.reason)
        except Exception as e:
            if entry.token.cancelled:
                return Outcome(TaskStatus.CANCELLED, error=entry.token.reason)
            logger.error(
                f"{entry.task_type.value} task {entry.task_id} failed: {type(e).__name__}: {e}"
            )
            return Outcome(
                TaskStatus.FAILED,
                error=str(e) or type(e).__name__,
                error_stack=traceback.format_exc(),
            )

        if entry.token.cancelled:
            # Completion after a cancellation signal counts as cancelled
            return Outcome(TaskStatus.CANCELLED, error=entry.token.reason)
        output = result.output if isinstance(result, ExecutionResult) else {}
        return Outcome(TaskStatus.COMPLETED, output=output)

    async def _finish(self, record: TaskRecord, entry: RunningTask, outcome: Outcome) -> None:
        fields: Dict[str, Any] = {"error": outcome.error, "error_stack": outcome.error_stack}
        if outcome.status == TaskStatus.COMPLETED:
            fields["progress"] = 100
        try:
            async with self._lock(record.id):
                finished = await self.store.transition(
                    record.id, TaskStatus.PROCESSING, outcome.status, **fields
                )
        finally:
            self.budget.release(entry.task_type, entry.project_id)
            self._running.pop(record.id, None)
            self._forget_lock(record.id)

        if finished is not None:
            if outcome.status == TaskStatus.COMPLETED:
                logger.info(f"Completed {entry.task_type.value} task {record.id}")
            else:
                logger.info(
                    f"{entry.task_type.value} task {record.id} ended {outcome.status.value}: {outcome.error}"
                )
            self._publish_status(
                record.id, record.project_id, outcome.status, outcome.error, outcome.output or None
            )
            if outcome.status in BLOCKING_STATES:
                await self._cascade(record.id, entry.task_type, outcome.status)
            await self._refresh_project(record.project_id)

        await self._dispatch()
        self._check_drained()

    def _progress_reporter(self, entry: RunningTask) -> Callable:
        async def report(update: ProgressUpdate) -> None:
            if entry.token.cancelled or entry.task_id not in self._running:
                return
            details = None
            if update.details:
                model = STAGE_DETAIL_MODELS[entry.task_type]
                reported = model.model_validate(update.details).model_dump(exclude_unset=True)
                details = {entry.task_type.value: reported}
            progress = normalize_task_progress(
                entry.task_type, TaskStatus.PROCESSING, update.percentage, details
            )
            async with self._lock(entry.task_id):
                written = await self.store.update_progress(entry.task_id, progress, details)
            if not written:
                return
            logger.debug(f"Task {entry.task_id} progress {progress}% {update.message or ''}")
            self.bus.publish(
                Event(
                    kind=EventKind.PROGRESS,
                    task_id=entry.task_id,
                    project_id=entry.project_id,
                    progress=progress,
                    progress_details=details,
                )
            )

        return report

    async def _call_cancel_hook(self, entry: RunningTask) -> None:
        if entry.executor is None:
            return
        try:
            await entry.executor.cancel(entry.task_id)
        except Exception as e:
            logger.warning(f"Executor cancel hook failed for {entry.task_id}: {e}")

    # ------------------------------------------------------------------
    # Cascade and bookkeeping
    # ------------------------------------------------------------------

    async def _cascade(self, task_id: str, task_type: TaskType, status: TaskStatus) -> None:
        """Cancel every pending task downstream of ``task_id``."""
        reason = str(DependencyFailure(f"Dependency {status.value}: {task_type.value}"))
        frontier = [task_id]
        while frontier:
            parent = frontier.pop()
            for dependent in await self.store.dependents_of(parent):
                if dependent.status != TaskStatus.PENDING.value:
                    continue
                if await self._cancel_pending(dependent, reason):
                    logger.info(
                        f"Cascade-cancelled {dependent.task_type} task {dependent.id}: {reason}"
                    )
                    frontier.append(dependent.id)

    async def _cancel_blocked(self, task: QueueTask, predecessor_status: TaskStatus) -> None:
        """Cancel a pending task found behind a failed or cancelled predecessor."""
        reason = f"Dependency {predecessor_status.value}"
        if await self._cancel_pending(task, reason):
            logger.info(f"Cancelled blocked {task.task_type} task {task.id}: {reason}")
            await self._cascade(task.id, TaskType(task.task_type), TaskStatus.CANCELLED)
            await self._refresh_project(task.project_id)

    async def _cancel_pending(self, task: QueueTask, reason: str) -> bool:
        async with self._lock(task.id):
            cancelled = await self.store.transition(
                task.id, TaskStatus.PENDING, TaskStatus.CANCELLED, error=reason
            )
        if task.id not in self._running:
            self._forget_lock(task.id)
        if cancelled is None:
            return False
        self._publish_status(task.id, task.project_id, TaskStatus.CANCELLED, reason)
        return True

    def _check_drained(self) -> None:
        if self._drain_armed and not self._running:
            self._drain_armed = False
            logger.info("Queue drained: no tasks processing")
            self.bus.publish(Event(kind=EventKind.PIPELINE_COMPLETE))

    async def _refresh_project(self, project_id: str) -> None:
        """Recompute project status; announce once when all its tasks are terminal."""
        try:
            status, newly_complete = await self.store.update_project_status(project_id)
        except ProjectNotFound:
            return
        if not newly_complete:
            return
        logger.info(f"Project {project_id} finished: {status.value}")
        self.bus.publish(
            Event(kind=EventKind.PROJECT_COMPLETE, project_id=project_id, status=status)
        )

    def _publish_status(
        self,
        task_id: str,
        project_id: str,
        status: TaskStatus,
        error: Optional[str] = None,
        output: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.bus.publish(
            Event(
                kind=EventKind.STATUS_CHANGE,
                task_id=task_id,
                project_id=project_id,
                status=status,
                error=error,
                output=output,
            )
        )

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    async def create_project(
        self,
        title: str,
        stages: Sequence,
        priority: int = 0,
    ) -> ProjectRecord:
        """Register a project and the stages it will request."""
        project = await self.store.create_project(title, normalize_stages(stages), priority)
        return ProjectRecord.model_validate(project)

    async def generate(
        self,
        project_id: str,
        stages: Optional[Sequence] = None,
    ) -> List[TaskRecord]:
        """Plan and enqueue the project's stage tasks.

        Args:
            project_id: Project to generate
            stages: Stages to run; defaults to the stages stored on the project

        Raises:
            ProjectNotFound: Unknown project
            StageValidationError: Invalid stage set; nothing is created
            ProjectBusy: The project still has pending or processing tasks

        Returns:
            The created tasks; empty when no stages are requested
        """
        project = await self.store.get_project(project_id)
        requested = stages if stages is not None else project.stages
        plans = resolve_stages(
            requested,
            self.config.stage_dependencies,
            self.config.stage_requirements,
            self.config.stage_priorities,
            base_priority=project.priority,
        )
        tasks = await self.store.create_tasks(project_id, plans, self.config.max_attempts)

        if tasks and self.running:
            await self._dispatch()
        return [TaskRecord.model_validate(t) for t in tasks]

    async def project_progress(self, project_id: str) -> ProjectProgress:
        await self.store.get_project(project_id)
        tasks = await self.store.tasks_for_project(project_id)
        return project_progress(project_id, tasks)

    async def delete_project(self, project_id: str) -> None:
        """Abort the project's running tasks, then delete it and all its tasks."""
        await self.store.get_project(project_id)
        entries = [e for e in self._running.values() if e.project_id == project_id]
        for entry in entries:
            entry.token.cancel("Project deleted")
            await self._call_cancel_hook(entry)
            if entry.handle is not None:
                entry.handle.cancel()
        handles = [e.handle for e in entries if e.handle is not None]
        if handles:
            await asyncio.gather(*handles, return_exceptions=True)

        task_ids = [t.id for t in await self.store.tasks_for_project(project_id)]
        await self.store.delete_project(project_id)
        for task_id in task_ids:
            self._forget_lock(task_id)
        self.wake()

    # ------------------------------------------------------------------
    # Task operations
    # ------------------------------------------------------------------

    async def get_task(self, task_id: str) -> TaskRecord:
        return TaskRecord.model_validate(await self.store.get_task(task_id))

    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        project_id: Optional[str] = None,
    ) -> List[TaskRecord]:
        tasks = await self.store.list_tasks(status=status, project_id=project_id)
        return [TaskRecord.model_validate(t) for t in tasks]

    async def cancel_task(self, task_id: str) -> TaskRecord:
        """Cancel a pending task immediately, or signal a processing one.

        A processing task becomes cancelled once its executor returns.

        Raises:
            TaskNotFound: Unknown task
            InvalidTransition: The task is already terminal
        """
        signalled: Optional[RunningTask] = None
        try:
            async with self._lock(task_id):
                task = await self.store.get_task(task_id)
                status = TaskStatus(task.status)
                if status == TaskStatus.PENDING:
                    cancelled = await self.store.transition(
                        task_id, TaskStatus.PENDING, TaskStatus.CANCELLED, error=CANCELLED_BY_USER
                    )
                    if cancelled is None:
                        raise InvalidTransition(f"Task {task_id} changed state during cancel")
                    task = cancelled
                elif status == TaskStatus.PROCESSING:
                    signalled = self._running.get(task_id)
                    if signalled is None:
                        # Processing row with no live executor in this process
                        cancelled = await self.store.transition(
                            task_id, TaskStatus.PROCESSING, TaskStatus.CANCELLED, error=CANCELLED_BY_USER
                        )
                        if cancelled is None:
                            raise InvalidTransition(f"Task {task_id} changed state during cancel")
                        task = cancelled
                    else:
                        signalled.token.cancel(CANCELLED_BY_USER)
                else:
                    raise InvalidTransition(f"Task {task_id} is already {status.value}")
        finally:
            if task_id not in self._running:
                self._forget_lock(task_id)

        if signalled is not None:
            logger.info(f"Cancellation requested for processing task {task_id}")
            await self._call_cancel_hook(signalled)
            return TaskRecord.model_validate(task)

        logger.info(f"Cancelled task {task_id}")
        self._publish_status(task_id, task.project_id, TaskStatus.CANCELLED, CANCELLED_BY_USER)
        await self._cascade(task_id, TaskType(task.task_type), TaskStatus.CANCELLED)
        await self._refresh_project(task.project_id)
        return TaskRecord.model_validate(task)

    async def retry_task(self, task_id: str) -> TaskRecord:
        """Return a failed task to pending for another attempt.

        Raises:
            TaskNotFound: Unknown task
            RetryRejected: The task is not failed; nothing changes
        """
        try:
            async with self._lock(task_id):
                task = await self.store.get_task(task_id)
                if task.status != TaskStatus.FAILED.value:
                    raise RetryRejected(f"Task {task_id} is {task.status}, only failed tasks can be retried")
                retried = await self.store.transition(
                    task_id,
                    TaskStatus.FAILED,
                    TaskStatus.PENDING,
                    error=None,
                    error_stack=None,
                    progress=0,
                    progress_details=None,
                    started_at=None,
                    completed_at=None,
                )
                if retried is None:
                    raise RetryRejected(f"Task {task_id} changed state during retry")
        finally:
            self._forget_lock(task_id)

        logger.info(f"Retrying {retried.task_type} task {task_id} (attempts so far: {retried.attempts})")
        self._publish_status(task_id, retried.project_id, TaskStatus.PENDING)
        await self._refresh_project(retried.project_id)
        self.wake()
        return TaskRecord.model_validate(retried)

    async def set_priority(self, task_id: str, priority: int) -> TaskRecord:
        """Reorder a task; lower values are dispatched first, clamped to [0, 100]."""
        task = await self.store.set_priority(task_id, priority)
        self.wake()
        return TaskRecord.model_validate(task)

    # ------------------------------------------------------------------
    # Pause and stats
    # ------------------------------------------------------------------

    def get_paused(self) -> bool:
        return self.budget.paused

    def pause(self) -> Dict[str, bool]:
        self.budget.pause()
        logger.info("Queue paused")
        return {"paused": True}

    def resume(self) -> Dict[str, bool]:
        self.budget.resume()
        logger.info("Queue resumed")
        self.wake()
        return {"paused": False}

    async def get_stats(self) -> QueueStats:
        counts = await self.store.stats(self.config.stats_window_hours)
        return QueueStats(
            **counts,
            active_workers=self.budget.active_workers,
            active_projects=self.budget.active_projects,
            stage_workers=self.budget.stage_workers(),
            max_projects=self.config.max_projects,
            max_per_stage={t: self.config.stage_ceiling(t) for t in TaskType},
        )

    # ------------------------------------------------------------------
    # Subscriptions
    # ------------------------------------------------------------------

    def on_progress(self, callback: Callable[[str, int, Optional[dict]], Any]) -> Subscription:
        """callback(task_id, progress, progress_details)"""
        return self.bus.subscribe(
            lambda e: callback(e.task_id, e.progress, e.progress_details),
            [EventKind.PROGRESS],
        )

    def on_status_change(
        self, callback: Callable[[str, TaskStatus, Optional[str]], Any]
    ) -> Subscription:
        """callback(task_id, status, error)"""
        return self.bus.subscribe(
            lambda e: callback(e.task_id, e.status, e.error),
            [EventKind.STATUS_CHANGE],
        )

    def on_pipeline_complete(self, callback: Callable[[], Any]) -> Subscription:
        return self.bus.subscribe(lambda e: callback(), [EventKind.PIPELINE_COMPLETE])

    def on_project_complete(self, callback: Callable[[str, TaskStatus], Any]) -> Subscription:
        """callback(project_id, aggregate status)"""
        return self.bus.subscribe(
            lambda e: callback(e.project_id, e.status),
            [EventKind.PROJECT_COMPLETE],
        )
