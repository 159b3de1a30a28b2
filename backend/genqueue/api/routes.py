"""API route handlers and request schemas for the queue and projects."""

import json
import logging
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from genqueue import __version__
from genqueue.orchestrator.dispatcher import Scheduler
from genqueue.orchestrator.events import Event, EventBus
from genqueue.orchestrator.state import TaskStatus, TaskType
from genqueue.schemas.task import ProjectProgress, ProjectRecord, QueueStats, TaskRecord

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ============================================================================
# Request / Response Schemas
# ============================================================================

class CreateProjectRequest(BaseModel):
    title: str = ""
    stages: list[TaskType] = Field(default_factory=list)
    priority: int = Field(default=0, ge=0, le=100)


class GenerateRequest(BaseModel):
    """Optional override of the stages stored on the project."""
    stages: Optional[list[TaskType]] = None


class PriorityRequest(BaseModel):
    priority: int


class PausedResponse(BaseModel):
    paused: bool


class DeleteResponse(BaseModel):
    project_id: str
    deleted: bool = True


def _scheduler(request: Request) -> Scheduler:
    return request.app.state.scheduler


# ============================================================================
# Queue
# ============================================================================

@router.get("/queue/tasks", response_model=list[TaskRecord])
async def list_tasks(
    request: Request,
    status: Optional[TaskStatus] = None,
    project_id: Optional[str] = None,
):
    """List queue tasks in dispatch order, optionally filtered."""
    return await _scheduler(request).list_tasks(status=status, project_id=project_id)


@router.get("/queue/tasks/{task_id}", response_model=TaskRecord)
async def get_task(task_id: str, request: Request):
    return await _scheduler(request).get_task(task_id)


@router.get("/queue/stats", response_model=QueueStats)
async def get_stats(request: Request):
    return await _scheduler(request).get_stats()


@router.get("/queue/paused", response_model=PausedResponse)
async def get_paused(request: Request):
    return PausedResponse(paused=_scheduler(request).get_paused())


@router.post("/queue/pause", response_model=PausedResponse)
async def pause_queue(request: Request):
    """Stop admitting new tasks; processing tasks run to completion."""
    return _scheduler(request).pause()


@router.post("/queue/resume", response_model=PausedResponse)
async def resume_queue(request: Request):
    return _scheduler(request).resume()


@router.post("/queue/tasks/{task_id}/cancel", response_model=TaskRecord)
async def cancel_task(task_id: str, request: Request):
    """Cancel a task.

    Pending tasks are cancelled immediately; processing tasks are signalled
    and become cancelled when their executor stops. Returns 409 for a task
    already completed, failed or cancelled.
    """
    return await _scheduler(request).cancel_task(task_id)


@router.post("/queue/tasks/{task_id}/retry", response_model=TaskRecord)
async def retry_task(task_id: str, request: Request):
    """Re-queue a failed task. Returns 409 if the task is not failed."""
    return await _scheduler(request).retry_task(task_id)


@router.put("/queue/tasks/{task_id}/priority", response_model=TaskRecord)
async def set_priority(task_id: str, body: PriorityRequest, request: Request):
    """Reorder a task; the value is clamped to 0-100."""
    return await _scheduler(request).set_priority(task_id, body.priority)


def format_sse(event: Event) -> str:
    """Render one event as a server-sent-events frame."""
    return f"event: {event.kind.value}\ndata: {json.dumps(event.to_dict())}\n\n"


async def _event_frames(bus: EventBus, request: Request) -> AsyncIterator[str]:
    async for event in bus.stream():
        if await request.is_disconnected():
            break
        yield format_sse(event)


@router.get("/queue/events")
async def stream_events(request: Request):
    """Live progress, status_change, pipeline_complete and project_complete events."""
    return StreamingResponse(
        _event_frames(_scheduler(request).bus, request),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


# ============================================================================
# Projects
# ============================================================================

@router.post("/projects", status_code=201, response_model=ProjectRecord)
async def create_project(body: CreateProjectRequest, request: Request):
    return await _scheduler(request).create_project(body.title, body.stages, body.priority)


@router.post("/projects/{project_id}/generate", status_code=202, response_model=list[TaskRecord])
async def generate_project(
    project_id: str,
    request: Request,
    body: Optional[GenerateRequest] = None,
):
    """Queue the project's stage tasks.

    Returns 422 for an invalid stage set (e.g. subtitles without audio) and
    409 if the project still has pending or processing tasks.
    """
    stages = body.stages if body is not None else None
    return await _scheduler(request).generate(project_id, stages)


@router.get("/projects/{project_id}/progress", response_model=ProjectProgress)
async def project_progress(project_id: str, request: Request):
    return await _scheduler(request).project_progress(project_id)


@router.delete("/projects/{project_id}", response_model=DeleteResponse)
async def delete_project(project_id: str, request: Request):
    """Delete a project and all its tasks, aborting any that are running."""
    await _scheduler(request).delete_project(project_id)
    return DeleteResponse(project_id=project_id)


@router.get("/health")
async def health(request: Request):
    scheduler = _scheduler(request)
    return {
        "status": "ok",
        "version": __version__,
        "scheduler_running": scheduler.running,
        "paused": scheduler.get_paused(),
    }
