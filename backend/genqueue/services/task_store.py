"""Durable task store: CRUD and status-transition persistence for queue tasks.

No scheduling decisions are made here. Every status write is a
compare-and-transition (``UPDATE ... WHERE id = :id AND status = :expected``)
so a completion callback and a user cancel can never both win. SQLite lock
contention on writes is retried with tenacity.
"""

import logging
from datetime import timedelta
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import aliased
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_fixed,
)

from genqueue.db.models import Project, QueueTask, new_id, utcnow
from genqueue.orchestrator.errors import ProjectBusy, ProjectNotFound, TaskNotFound
from genqueue.orchestrator.graph import TaskPlan
from genqueue.orchestrator.progress import aggregate_status, latest_per_stage
from genqueue.orchestrator.state import TaskStatus, TaskType, check_transition, is_terminal

logger = logging.getLogger(__name__)

MIN_PRIORITY = 0
MAX_PRIORITY = 100

# Bounded retry for "database is locked" under concurrent writers
_write_retry = retry(
    stop=stop_after_attempt(5),
    wait=wait_fixed(0.1),
    retry=retry_if_exception_type(OperationalError),
    before_sleep=before_sleep_log(logger, logging.WARNING),
    reraise=True,
)


def clamp_priority(priority: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(priority)))


class TaskStore:
    """Queue task persistence over an async session factory."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    # ------------------------------------------------------------------
    # Projects
    # ------------------------------------------------------------------

    @_write_retry
    async def create_project(
        self,
        title: str,
        stages: Sequence,
        priority: int = 0,
    ) -> Project:
        project = Project(
            id=new_id(),
            title=title,
            stages=[TaskType(s).value for s in stages],
            priority=clamp_priority(priority),
        )
        async with self.session_factory() as session:
            session.add(project)
            await session.commit()
        logger.info(f"Created project {project.id} ({title!r}) stages={project.stages}")
        return project

    async def get_project(self, project_id: str) -> Project:
        async with self.session_factory() as session:
            project = await session.get(Project, project_id)
        if project is None:
            raise ProjectNotFound(f"Project {project_id} not found")
        return project

    async def list_projects(self) -> List[Project]:
        async with self.session_factory() as session:
            result = await session.execute(select(Project).order_by(Project.created_at))
            return list(result.scalars().all())

    @_write_retry
    async def delete_project(self, project_id: str) -> None:
        """Delete a project and every task it owns."""
        async with self.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None:
                raise ProjectNotFound(f"Project {project_id} not found")
            # Clear intra-project back-references before the bulk delete
            await session.execute(
                update(QueueTask)
                .where(QueueTask.project_id == project_id)
                .values(depends_on_task_id=None)
            )
            await session.execute(delete(QueueTask).where(QueueTask.project_id == project_id))
            await session.delete(project)
            await session.commit()
        logger.info(f"Deleted project {project_id}")

    @_write_retry
    async def update_project_status(self, project_id: str) -> Tuple[TaskStatus, bool]:
        """Recompute the project's aggregate status from its latest task per stage.

        The first call that finds every task terminal claims ``completed_at``
        with a compare-and-set, so exactly one caller learns of completion.

        Returns:
            (aggregate status, whether this call marked the project complete)
        """
        async with self.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None:
                raise ProjectNotFound(f"Project {project_id} not found")
            result = await session.execute(
                select(QueueTask).where(QueueTask.project_id == project_id)
            )
            latest = latest_per_stage(result.scalars().all())
            status = aggregate_status(t.status for t in latest.values())
            all_terminal = bool(latest) and all(is_terminal(t.status) for t in latest.values())
            project.status = status.value
            if status == TaskStatus.FAILED:
                failed = [t for t in latest.values() if t.status == TaskStatus.FAILED.value]
                project.error_message = failed[0].error
            elif status != TaskStatus.CANCELLED:
                project.error_message = None

            newly_complete = False
            if all_terminal:
                claimed = await session.execute(
                    update(Project)
                    .where(Project.id == project_id, Project.completed_at.is_(None))
                    .values(completed_at=utcnow())
                )
                newly_complete = claimed.rowcount == 1
            else:
                project.completed_at = None
            await session.commit()
        return status, newly_complete

    # ------------------------------------------------------------------
    # Task creation and reads
    # ------------------------------------------------------------------

    @_write_retry
    async def create_tasks(
        self,
        project_id: str,
        plans: Sequence[TaskPlan],
        max_attempts: int = 3,
    ) -> List[QueueTask]:
        """Persist a project's planned task set in one transaction.

        Raises:
            ProjectNotFound: If the project does not exist
            ProjectBusy: If the project still has pending or processing tasks
        """
        async with self.session_factory() as session:
            project = await session.get(Project, project_id)
            if project is None:
                raise ProjectNotFound(f"Project {project_id} not found")
            if not plans:
                logger.info(f"No stages requested for project {project_id}; nothing queued")
                return []

            active = await session.execute(
                select(func.count(QueueTask.id)).where(
                    QueueTask.project_id == project_id,
                    QueueTask.status.in_(
                        [TaskStatus.PENDING.value, TaskStatus.PROCESSING.value]
                    ),
                )
            )
            if active.scalar_one() > 0:
                raise ProjectBusy(f"Project {project_id} already has queued tasks")

            created_at = utcnow()
            ids: Dict[TaskType, str] = {}
            tasks: List[QueueTask] = []
            for offset, plan in enumerate(plans):
                task_id = new_id()
                ids[plan.task_type] = task_id
                task = QueueTask(
                    id=task_id,
                    project_id=project_id,
                    task_type=plan.task_type.value,
                    status=TaskStatus.PENDING.value,
                    priority=clamp_priority(plan.priority),
                    progress=0,
                    attempts=0,
                    max_attempts=max_attempts,
                    depends_on_task_id=ids[plan.depends_on] if plan.depends_on else None,
                    stage_group=plan.stage_group,
                    # Distinct timestamps keep creation order stable for tie-breaking
                    created_at=created_at + timedelta(microseconds=offset),
                )
                session.add(task)
                tasks.append(task)

            project.stages = [plan.task_type.value for plan in plans]
            project.status = TaskStatus.PENDING.value
            project.error_message = None
            project.completed_at = None
            await session.commit()

        logger.info(
            f"Queued {len(tasks)} tasks for project {project_id}: "
            f"{[t.task_type for t in tasks]}"
        )
        return tasks

    async def get_task(self, task_id: str) -> QueueTask:
        async with self.session_factory() as session:
            task = await session.get(QueueTask, task_id)
        if task is None:
            raise TaskNotFound(f"Task {task_id} not found")
        return task

    async def list_tasks(
        self,
        status: Optional[TaskStatus] = None,
        project_id: Optional[str] = None,
    ) -> List[QueueTask]:
        """All tasks, optionally filtered, in dispatch order."""
        query = select(QueueTask).order_by(QueueTask.priority, QueueTask.created_at)
        if status is not None:
            query = query.where(QueueTask.status == TaskStatus(status).value)
        if project_id is not None:
            query = query.where(QueueTask.project_id == project_id)
        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())

    async def tasks_for_project(self, project_id: str) -> List[QueueTask]:
        return await self.list_tasks(project_id=project_id)

    async def list_pending(self) -> List[Tuple[QueueTask, Optional[str]]]:
        """Pending tasks with their predecessor's status (None if no predecessor).

        Ordered by priority ascending, then created_at ascending.
        """
        predecessor = aliased(QueueTask)
        query = (
            select(QueueTask, predecessor.status)
            .outerjoin(predecessor, QueueTask.depends_on_task_id == predecessor.id)
            .where(QueueTask.status == TaskStatus.PENDING.value)
            .order_by(QueueTask.priority, QueueTask.created_at)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [(row[0], row[1]) for row in result.all()]

    async def dependents_of(self, task_id: str) -> List[QueueTask]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(QueueTask)
                .where(QueueTask.depends_on_task_id == task_id)
                .order_by(QueueTask.created_at)
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @_write_retry
    async def transition(
        self,
        task_id: str,
        expected: TaskStatus,
        target: TaskStatus,
        **fields,
    ) -> Optional[QueueTask]:
        """Move a task from ``expected`` to ``target`` if it is still ``expected``.

        Args:
            task_id: Task to update
            expected: Status the caller believes the task holds
            target: New status; must be a legal lifecycle move from ``expected``
            **fields: Extra columns to write in the same statement

        Returns:
            The updated row, or None if the task no longer holds ``expected``

        Raises:
            InvalidTransition: If ``expected -> target`` is not a lifecycle edge
        """
        expected = TaskStatus(expected)
        target = TaskStatus(target)
        check_transition(task_id, expected, target)

        values = dict(fields)
        values["status"] = target.value
        if target == TaskStatus.PROCESSING:
            values.setdefault("started_at", utcnow())
            values["attempts"] = QueueTask.attempts + 1
        elif is_terminal(target):
            values.setdefault("completed_at", utcnow())

        async with self.session_factory() as session:
            result = await session.execute(
                update(QueueTask)
                .where(QueueTask.id == task_id, QueueTask.status == expected.value)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                await session.rollback()
                return None
            await session.commit()
            task = await session.get(QueueTask, task_id, populate_existing=True)

        logger.debug(f"Task {task_id}: {expected.value} -> {target.value}")
        return task

    @_write_retry
    async def update_progress(
        self,
        task_id: str,
        progress: int,
        progress_details: Optional[dict] = None,
    ) -> bool:
        """Write progress for a processing task; ignored once it left processing."""
        values = {"progress": max(0, min(100, int(progress)))}
        if progress_details is not None:
            values["progress_details"] = progress_details
        async with self.session_factory() as session:
            result = await session.execute(
                update(QueueTask)
                .where(
                    QueueTask.id == task_id,
                    QueueTask.status == TaskStatus.PROCESSING.value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return result.rowcount > 0

    @_write_retry
    async def set_priority(self, task_id: str, priority: int) -> QueueTask:
        """Reorder a task; the value is clamped to [0, 100]."""
        async with self.session_factory() as session:
            task = await session.get(QueueTask, task_id)
            if task is None:
                raise TaskNotFound(f"Task {task_id} not found")
            task.priority = clamp_priority(priority)
            await session.commit()
        return task

    @_write_retry
    async def reset_processing(self) -> int:
        """Return tasks left processing by a dead process to pending.

        Returns:
            Number of tasks recovered
        """
        async with self.session_factory() as session:
            result = await session.execute(
                update(QueueTask)
                .where(QueueTask.status == TaskStatus.PROCESSING.value)
                .values(
                    status=TaskStatus.PENDING.value,
                    progress=0,
                    progress_details=None,
                    started_at=None,
                )
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        recovered = result.rowcount or 0
        if recovered:
            logger.info(f"Recovered {recovered} orphaned processing tasks to pending")
        return recovered

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    async def stats(self, window_hours: int = 24) -> Dict[str, int]:
        """Status counts; completed and failed only within the rolling window."""
        cutoff = utcnow() - timedelta(hours=window_hours)
        async with self.session_factory() as session:
            by_status = await session.execute(
                select(QueueTask.status, func.count(QueueTask.id)).group_by(QueueTask.status)
            )
            counts = {status: count for status, count in by_status.all()}
            windowed = await session.execute(
                select(QueueTask.status, func.count(QueueTask.id))
                .where(
                    QueueTask.status.in_(
                        [TaskStatus.COMPLETED.value, TaskStatus.FAILED.value]
                    ),
                    QueueTask.completed_at >= cutoff,
                )
                .group_by(QueueTask.status)
            )
            recent = {status: count for status, count in windowed.all()}

        return {
            "pending": counts.get(TaskStatus.PENDING.value, 0),
            "processing": counts.get(TaskStatus.PROCESSING.value, 0),
            "completed_last_24h": recent.get(TaskStatus.COMPLETED.value, 0),
            "failed_last_24h": recent.get(TaskStatus.FAILED.value, 0),
            "total": sum(counts.values()),
        }
