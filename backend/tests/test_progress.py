"""Progress normalization, weighted overall progress and aggregate status."""

import itertools
from datetime import datetime, timedelta
from types import SimpleNamespace

import pytest

from genqueue.orchestrator.progress import (
    aggregate_status,
    normalize_task_progress,
    overall_progress,
    project_progress,
    ratio_progress,
)
from genqueue.orchestrator.state import TaskStatus, TaskType

P, I, A, S = TaskType.PROMPTS, TaskType.IMAGES, TaskType.AUDIO, TaskType.SUBTITLES
STATUSES = list(TaskStatus)


def test_ratio_progress():
    assert ratio_progress(3, 12) == 25
    assert ratio_progress(1, 3) == 33
    assert ratio_progress(2, 3) == 67
    assert ratio_progress(15, 10) == 100
    assert ratio_progress(0, 0) is None


def test_sub_unit_counts():
    images = {"images": {"total": 8, "completed": 2, "failed": 1}}
    prompts = {"prompts": {"total": 40, "generated": 10, "batches": 4}}

    assert normalize_task_progress(I, TaskStatus.PROCESSING, 90, images) == 25
    assert normalize_task_progress(P, TaskStatus.PROCESSING, None, prompts) == 25


def test_direct_percentage_for_audio():
    assert normalize_task_progress(A, TaskStatus.PROCESSING, 42.4) == 42
    assert normalize_task_progress(A, TaskStatus.PROCESSING, None, {"audio": {"progress": 70}}) == 70


def test_completed_is_always_100():
    details = {"images": {"total": 10, "completed": 3}}
    assert normalize_task_progress(I, TaskStatus.COMPLETED, 10, details) == 100


@pytest.mark.parametrize("reported", [-20, 0, 55.5, 100, 250, None])
def test_progress_is_clamped(reported):
    assert 0 <= normalize_task_progress(A, TaskStatus.PROCESSING, reported) <= 100


def test_overall_weights():
    assert overall_progress({P: 100}) == 20
    assert overall_progress({A: 100}) == 30
    assert overall_progress({I: 100}) == 40
    assert overall_progress({S: 100}) == 10
    assert overall_progress({P: 100, A: 100, I: 100, S: 100}) == 100
    assert overall_progress({}) == 0


@pytest.mark.parametrize(
    "prompts,audio,images,subtitles",
    [(50, 20, 10, 0), (33, 67, 12, 99), (100, 0, 45, 0), (7, 13, 29, 71)],
)
def test_overall_matches_formula(prompts, audio, images, subtitles):
    expected = round(prompts * 0.20 + audio * 0.30 + images * 0.40 + subtitles * 0.10)
    assert overall_progress({P: prompts, A: audio, I: images, S: subtitles}) == expected


def test_overall_rounds_halves_up():
    # 5 * 0.10 = 0.5
    assert overall_progress({S: 5}) == 1


def _expected_aggregate(statuses):
    if TaskStatus.FAILED in statuses:
        return TaskStatus.FAILED
    if all(s == TaskStatus.CANCELLED for s in statuses):
        return TaskStatus.CANCELLED
    if all(s == TaskStatus.COMPLETED for s in statuses):
        return TaskStatus.COMPLETED
    if TaskStatus.PROCESSING in statuses:
        return TaskStatus.PROCESSING
    return TaskStatus.PENDING


def test_aggregate_status_over_every_four_task_combination():
    for statuses in itertools.product(STATUSES, repeat=4):
        assert aggregate_status(statuses) == _expected_aggregate(statuses), statuses


def test_aggregate_status_examples():
    assert aggregate_status([]) == TaskStatus.PENDING
    assert aggregate_status(["completed", "cancelled"]) == TaskStatus.PENDING
    assert aggregate_status(["cancelled", "failed"]) == TaskStatus.FAILED
    assert aggregate_status(["completed", "processing"]) == TaskStatus.PROCESSING


def _task(task_type, status, progress=0, details=None, created_at=None):
    return SimpleNamespace(
        task_type=task_type.value,
        status=status.value,
        progress=progress,
        progress_details=details,
        created_at=created_at or datetime(2024, 1, 1),
    )


def test_project_progress():
    tasks = [
        _task(P, TaskStatus.COMPLETED, 100),
        _task(I, TaskStatus.PROCESSING, 50, {"images": {"total": 4, "completed": 2, "active_workers": 2, "max_workers": 4}}),
        _task(A, TaskStatus.PROCESSING, 60, {"audio": {"progress": 60}}),
    ]

    result = project_progress("p1", tasks)

    assert result.overall == round(100 * 0.2 + 60 * 0.3 + 50 * 0.4)
    assert result.status == TaskStatus.PROCESSING
    assert result.stages[I].active_workers == 2
    assert result.stages[I].max_workers == 4
    assert S not in result.stages


def test_project_progress_uses_latest_task_per_stage():
    old = datetime(2024, 1, 1)
    tasks = [
        _task(A, TaskStatus.FAILED, 30, created_at=old),
        _task(A, TaskStatus.COMPLETED, 100, created_at=old + timedelta(hours=1)),
    ]

    result = project_progress("p1", tasks)

    assert result.status == TaskStatus.COMPLETED
    assert result.overall == 30
