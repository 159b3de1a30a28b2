"""Task store persistence: creation, compare-and-transition, stats, recovery."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from genqueue.config import QueueConfig
from genqueue.db.models import QueueTask, utcnow
from genqueue.orchestrator.errors import (
    InvalidTransition,
    ProjectBusy,
    ProjectNotFound,
    TaskNotFound,
)
from genqueue.orchestrator.graph import resolve_stages
from genqueue.orchestrator.state import TaskStatus, TaskType

DEFAULTS = QueueConfig()


async def _project_with_tasks(store, stages=("prompts", "images", "audio", "subtitles"), priority=0):
    project = await store.create_project("Test project", list(stages), priority)
    plans = resolve_stages(
        stages,
        DEFAULTS.stage_dependencies,
        DEFAULTS.stage_requirements,
        DEFAULTS.stage_priorities,
        base_priority=priority,
    )
    tasks = await store.create_tasks(project.id, plans)
    return project, {TaskType(t.task_type): t for t in tasks}


@pytest.mark.asyncio
async def test_create_tasks_links_predecessors(store):
    project, tasks = await _project_with_tasks(store)

    assert tasks[TaskType.IMAGES].depends_on_task_id == tasks[TaskType.PROMPTS].id
    assert tasks[TaskType.SUBTITLES].depends_on_task_id == tasks[TaskType.AUDIO].id
    assert tasks[TaskType.PROMPTS].depends_on_task_id is None
    for task in tasks.values():
        assert task.status == "pending"
        assert task.attempts == 0
        assert task.progress == 0

    stored = await store.get_project(project.id)
    assert stored.status == "pending"
    assert stored.stages == ["prompts", "audio", "images", "subtitles"]


@pytest.mark.asyncio
async def test_generate_twice_while_active_is_rejected(store):
    project, _ = await _project_with_tasks(store, ("audio",))
    plans = resolve_stages(["audio"], DEFAULTS.stage_dependencies)

    with pytest.raises(ProjectBusy):
        await store.create_tasks(project.id, plans)


@pytest.mark.asyncio
async def test_empty_plan_queues_nothing(store):
    project = await store.create_project("No stages", [])

    assert await store.create_tasks(project.id, []) == []
    assert await store.tasks_for_project(project.id) == []


@pytest.mark.asyncio
async def test_unknown_ids(store):
    with pytest.raises(TaskNotFound):
        await store.get_task("missing")
    with pytest.raises(ProjectNotFound):
        await store.get_project("missing")
    with pytest.raises(ProjectNotFound):
        await store.create_tasks("missing", [])


@pytest.mark.asyncio
async def test_list_pending_order_and_predecessor_status(store):
    _, first = await _project_with_tasks(store, ("prompts", "images"), priority=10)
    _, second = await _project_with_tasks(store, ("audio",), priority=0)

    pending = await store.list_pending()
    ids = [task.id for task, _ in pending]

    assert ids[0] == second[TaskType.AUDIO].id
    assert ids.index(first[TaskType.PROMPTS].id) < ids.index(first[TaskType.IMAGES].id)
    predecessor = dict((task.id, status) for task, status in pending)
    assert predecessor[first[TaskType.IMAGES].id] == "pending"
    assert predecessor[first[TaskType.PROMPTS].id] is None


@pytest.mark.asyncio
async def test_equal_priority_ties_break_on_creation_time(store):
    _, a = await _project_with_tasks(store, ("audio",))
    _, b = await _project_with_tasks(store, ("audio",))

    ids = [task.id for task, _ in await store.list_pending()]

    assert ids == [a[TaskType.AUDIO].id, b[TaskType.AUDIO].id]


@pytest.mark.asyncio
async def test_transition_is_compare_and_set(store):
    _, tasks = await _project_with_tasks(store, ("audio",))
    task_id = tasks[TaskType.AUDIO].id

    started = await store.transition(task_id, TaskStatus.PENDING, TaskStatus.PROCESSING)
    assert started.status == "processing"
    assert started.attempts == 1
    assert started.started_at is not None

    # Second writer expecting pending loses
    assert await store.transition(task_id, TaskStatus.PENDING, TaskStatus.PROCESSING) is None

    done = await store.transition(task_id, TaskStatus.PROCESSING, TaskStatus.COMPLETED, progress=100)
    assert done.status == "completed"
    assert done.completed_at is not None
    assert done.progress == 100


@pytest.mark.asyncio
async def test_illegal_transition_raises(store):
    _, tasks = await _project_with_tasks(store, ("audio",))

    with pytest.raises(InvalidTransition):
        await store.transition(tasks[TaskType.AUDIO].id, TaskStatus.PENDING, TaskStatus.COMPLETED)


@pytest.mark.asyncio
async def test_progress_only_written_while_processing(store):
    _, tasks = await _project_with_tasks(store, ("audio",))
    task_id = tasks[TaskType.AUDIO].id

    assert not await store.update_progress(task_id, 50)
    await store.transition(task_id, TaskStatus.PENDING, TaskStatus.PROCESSING)
    assert await store.update_progress(task_id, 150, {"audio": {"progress": 150}})

    task = await store.get_task(task_id)
    assert task.progress == 100
    assert task.progress_details == {"audio": {"progress": 150}}


@pytest.mark.asyncio
async def test_set_priority_is_clamped(store):
    _, tasks = await _project_with_tasks(store, ("audio",))
    task_id = tasks[TaskType.AUDIO].id

    assert (await store.set_priority(task_id, 250)).priority == 100
    assert (await store.set_priority(task_id, -5)).priority == 0


@pytest.mark.asyncio
async def test_reset_processing_recovers_orphans(store):
    _, tasks = await _project_with_tasks(store, ("prompts", "audio"))
    task_id = tasks[TaskType.AUDIO].id
    await store.transition(task_id, TaskStatus.PENDING, TaskStatus.PROCESSING)
    await store.update_progress(task_id, 40)

    assert await store.reset_processing() == 1

    task = await store.get_task(task_id)
    assert task.status == "pending"
    assert task.progress == 0
    assert task.started_at is None
    assert task.attempts == 1


@pytest.mark.asyncio
async def test_stats_window(store, session_factory):
    _, tasks = await _project_with_tasks(store, ("prompts", "images", "audio", "subtitles"))
    prompts, audio = tasks[TaskType.PROMPTS].id, tasks[TaskType.AUDIO].id
    await store.transition(prompts, TaskStatus.PENDING, TaskStatus.PROCESSING)
    await store.transition(prompts, TaskStatus.PROCESSING, TaskStatus.COMPLETED)
    await store.transition(audio, TaskStatus.PENDING, TaskStatus.PROCESSING)
    await store.transition(audio, TaskStatus.PROCESSING, TaskStatus.FAILED, error="boom")
    await store.transition(tasks[TaskType.IMAGES].id, TaskStatus.PENDING, TaskStatus.PROCESSING)

    stats = await store.stats()
    assert stats == {
        "pending": 1,
        "processing": 1,
        "completed_last_24h": 1,
        "failed_last_24h": 1,
        "total": 4,
    }

    # Age the completion out of the window
    async with session_factory() as session:
        await session.execute(
            update(QueueTask)
            .where(QueueTask.id == prompts)
            .values(completed_at=utcnow() - timedelta(hours=25))
        )
        await session.commit()

    stats = await store.stats()
    assert stats["completed_last_24h"] == 0
    assert stats["total"] == 4


@pytest.mark.asyncio
async def test_update_project_status(store):
    project, tasks = await _project_with_tasks(store, ("audio", "subtitles"))
    audio = tasks[TaskType.AUDIO].id
    await store.transition(audio, TaskStatus.PENDING, TaskStatus.PROCESSING)

    status, newly_complete = await store.update_project_status(project.id)
    assert status == TaskStatus.PROCESSING
    assert not newly_complete

    await store.transition(audio, TaskStatus.PROCESSING, TaskStatus.FAILED, error="voice unavailable")
    await store.transition(tasks[TaskType.SUBTITLES].id, TaskStatus.PENDING, TaskStatus.CANCELLED)
    status, newly_complete = await store.update_project_status(project.id)

    assert status == TaskStatus.FAILED
    assert newly_complete
    # Completion is reported to one caller only
    assert await store.update_project_status(project.id) == (TaskStatus.FAILED, False)
    stored = await store.get_project(project.id)
    assert stored.status == "failed"
    assert stored.error_message == "voice unavailable"
    assert stored.completed_at is not None


@pytest.mark.asyncio
async def test_delete_project_removes_tasks(store):
    project, tasks = await _project_with_tasks(store)
    _, other = await _project_with_tasks(store, ("audio",))

    await store.delete_project(project.id)

    with pytest.raises(ProjectNotFound):
        await store.get_project(project.id)
    remaining = await store.list_tasks()
    assert [t.id for t in remaining] == [other[TaskType.AUDIO].id]
