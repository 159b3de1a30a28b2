"""Pydantic schemas for queue tasks, stage progress details and queue stats.

Stage progress details are stored on the task row as a dict keyed by stage
name, e.g. ``{"images": {"status": "generating", "total": 12, ...}}``. The
scheduler validates what each stage executor reports against the models
below before storing it; the progress aggregator reads the same keys back.
"""

from datetime import datetime
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from genqueue.orchestrator.state import TaskStatus, TaskType

StageDetailStatus = Literal["generating", "complete"]


class StageProgressDetails(BaseModel):
    """Fields any stage may report. Stage-specific extras are kept as given."""

    model_config = ConfigDict(extra="allow")

    status: StageDetailStatus = "generating"
    active_workers: Optional[int] = None
    max_workers: Optional[int] = None


class PromptsProgressDetails(StageProgressDetails):
    """Prompt synthesis progress: prompts generated across batches."""

    total: int = 0
    generated: int = 0
    failed: int = 0
    batches: int = 0
    current_batch: int = 0


class ImagesProgressDetails(StageProgressDetails):
    """Image synthesis progress: images completed/failed out of total."""

    total: int = 0
    completed: int = 0
    failed: int = 0
    current_file: Optional[str] = None


class AudioProgressDetails(StageProgressDetails):
    """Audio narration progress: direct percentage."""

    progress: Optional[float] = None


class SubtitlesProgressDetails(StageProgressDetails):
    """Subtitle extraction progress."""

    progress: Optional[float] = None
    line_count: Optional[int] = None


STAGE_DETAIL_MODELS = {
    TaskType.PROMPTS: PromptsProgressDetails,
    TaskType.IMAGES: ImagesProgressDetails,
    TaskType.AUDIO: AudioProgressDetails,
    TaskType.SUBTITLES: SubtitlesProgressDetails,
}


class TaskRecord(BaseModel):
    """Read model of one queue task, built from the ORM row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: str
    task_type: TaskType
    status: TaskStatus
    priority: int
    progress: int
    progress_details: Optional[Dict[str, Any]] = None
    attempts: int
    max_attempts: int
    depends_on_task_id: Optional[str] = None
    stage_group: int = 0
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[str] = None
    error_stack: Optional[str] = None
    # Intra-task worker ceiling, filled in by the scheduler on admission
    max_workers: int = 1


class ProjectRecord(BaseModel):
    """Read model of one project."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    stages: list[TaskType] = Field(default_factory=list)
    status: str
    priority: int
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class QueueStats(BaseModel):
    """Queue counters and live concurrency figures."""

    pending: int = 0
    processing: int = 0
    completed_last_24h: int = 0
    failed_last_24h: int = 0
    total: int = 0
    active_workers: int = 0
    active_projects: int = 0
    stage_workers: Dict[TaskType, int] = Field(default_factory=dict)
    max_projects: int
    max_per_stage: Dict[TaskType, int]


class StageProgress(BaseModel):
    """Normalized progress of one stage within a project."""

    progress: int = 0
    status: str = "pending"
    active_workers: Optional[int] = None
    max_workers: Optional[int] = None


class ProjectProgress(BaseModel):
    """Weighted overall progress and aggregate status of a project."""

    project_id: str
    overall: int
    status: TaskStatus
    stages: Dict[TaskType, StageProgress]
