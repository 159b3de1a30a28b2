"""Progress normalization and project-level aggregation.

Per-task progress is always an integer in [0, 100]:
- prompts: generated / total across batches
- images: completed / total
- audio, subtitles: the percentage the executor reports
- any completed task: 100, whatever the counts say

Project progress is the fixed weighted sum
``prompts*0.20 + audio*0.30 + images*0.40 + subtitles*0.10`` with 0 for stages
the project did not request. Rounding is half-up on the exact integer sum so
that e.g. 12.5 becomes 13.
"""

from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from genqueue.orchestrator.state import TaskStatus, TaskType
from genqueue.schemas.task import ProjectProgress, StageProgress

# Overall progress weights, in percent
STAGE_WEIGHTS: Dict[TaskType, int] = {
    TaskType.PROMPTS: 20,
    TaskType.AUDIO: 30,
    TaskType.IMAGES: 40,
    TaskType.SUBTITLES: 10,
}

# Detail keys holding (done, total) for sub-unit stages
SUB_UNIT_KEYS = {
    TaskType.PROMPTS: ("generated", "total"),
    TaskType.IMAGES: ("completed", "total"),
}


def clamp_progress(value: Optional[float]) -> int:
    """Round half-up and clamp to [0, 100]; None counts as 0."""
    if value is None:
        return 0
    rounded = int(value + 0.5) if value >= 0 else 0
    return max(0, min(100, rounded))


def ratio_progress(done: Any, total: Any) -> Optional[int]:
    """Percentage of ``done`` over ``total``, or None when total is unknown."""
    try:
        done_n = int(done or 0)
        total_n = int(total or 0)
    except (TypeError, ValueError):
        return None
    if total_n <= 0:
        return None
    # Exact integer half-up rounding of 100 * done / total
    return max(0, min(100, (200 * done_n + total_n) // (2 * total_n)))


def stage_details(task_type: TaskType, details: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Pull the stage-keyed sub-dict out of a task's progress_details."""
    if not details:
        return {}
    nested = details.get(TaskType(task_type).value)
    if isinstance(nested, Mapping):
        return dict(nested)
    return {}


def normalize_task_progress(
    task_type: TaskType,
    status: TaskStatus,
    reported: Optional[float] = None,
    details: Optional[Mapping[str, Any]] = None,
) -> int:
    """Compute the 0-100 progress of one task from what its executor reported.

    Args:
        task_type: Stage of the task
        status: Current task status; completed always yields 100
        reported: Percentage the executor passed directly, if any
        details: progress_details dict keyed by stage name

    Returns:
        Integer progress in [0, 100]
    """
    task_type = TaskType(task_type)
    if TaskStatus(status) == TaskStatus.COMPLETED:
        return 100

    sub = stage_details(task_type, details)
    keys = SUB_UNIT_KEYS.get(task_type)
    if keys is not None:
        from_counts = ratio_progress(sub.get(keys[0]), sub.get(keys[1]))
        if from_counts is not None:
            return from_counts

    if sub.get("progress") is not None:
        return clamp_progress(sub["progress"])
    return clamp_progress(reported)


def overall_progress(stage_progress: Mapping[TaskType, int]) -> int:
    """Weighted overall project progress; stages not present count as 0."""
    weighted = 0
    for task_type, weight in STAGE_WEIGHTS.items():
        value = max(0, min(100, int(stage_progress.get(task_type, 0) or 0)))
        weighted += value * weight
    # weighted is in hundredths of a percent; round half-up
    return (weighted + 50) // 100


def aggregate_status(statuses: Iterable[TaskStatus]) -> TaskStatus:
    """Project status from member task statuses.

    Precedence: failed > all cancelled > all completed > any processing > pending.
    An empty group is pending.
    """
    members = [TaskStatus(s) for s in statuses]
    if not members:
        return TaskStatus.PENDING
    if any(s == TaskStatus.FAILED for s in members):
        return TaskStatus.FAILED
    if all(s == TaskStatus.CANCELLED for s in members):
        return TaskStatus.CANCELLED
    if all(s == TaskStatus.COMPLETED for s in members):
        return TaskStatus.COMPLETED
    if any(s == TaskStatus.PROCESSING for s in members):
        return TaskStatus.PROCESSING
    return TaskStatus.PENDING


def stage_progress(task) -> StageProgress:
    """Display progress of one task as used in the project view.

    Only processing tasks report partial progress; pending, failed and
    cancelled tasks contribute 0 to the project total.
    """
    status = TaskStatus(task.status)
    task_type = TaskType(task.task_type)
    sub = stage_details(task_type, task.progress_details)

    if status == TaskStatus.COMPLETED:
        return StageProgress(progress=100, status="complete")
    if status == TaskStatus.FAILED:
        return StageProgress(progress=0, status="failed")
    if status == TaskStatus.CANCELLED:
        return StageProgress(progress=0, status="cancelled")
    if status == TaskStatus.PENDING:
        return StageProgress(progress=0, status="pending")

    return StageProgress(
        progress=normalize_task_progress(task_type, status, task.progress, task.progress_details),
        status=sub.get("status", "generating"),
        active_workers=sub.get("active_workers"),
        max_workers=sub.get("max_workers"),
    )


def latest_per_stage(tasks: Sequence) -> Dict[TaskType, Any]:
    """Most recently created task of each stage (a regenerated project has several)."""
    latest: Dict[TaskType, Any] = {}
    for task in sorted(tasks, key=lambda t: t.created_at):
        latest[TaskType(task.task_type)] = task
    return latest


def project_progress(project_id: str, tasks: Sequence) -> ProjectProgress:
    """Overall weighted progress and aggregate status of a project's tasks."""
    latest = latest_per_stage(tasks)
    stages = {task_type: stage_progress(task) for task_type, task in latest.items()}
    return ProjectProgress(
        project_id=project_id,
        overall=overall_progress({t: s.progress for t, s in stages.items()}),
        status=aggregate_status(task.status for task in latest.values()),
        stages=stages,
    )
