"""Dependency graph resolution and the task state machine."""

import pytest

from genqueue.config import QueueConfig
from genqueue.orchestrator.errors import InvalidTransition, StageValidationError
from genqueue.orchestrator.graph import check_acyclic, normalize_stages, resolve_stages
from genqueue.orchestrator.state import (
    TaskStatus,
    TaskType,
    can_transition,
    check_transition,
    is_terminal,
)

P, I, A, S = TaskType.PROMPTS, TaskType.IMAGES, TaskType.AUDIO, TaskType.SUBTITLES
DEFAULTS = QueueConfig()


def _resolve(stages, **kwargs):
    return resolve_stages(
        stages,
        DEFAULTS.stage_dependencies,
        DEFAULTS.stage_requirements,
        **kwargs,
    )


def _by_type(plans):
    return {plan.task_type: plan for plan in plans}


def test_all_stages_get_default_edges():
    plans = _by_type(_resolve(["prompts", "images", "audio", "subtitles"]))

    assert plans[P].depends_on is None
    assert plans[A].depends_on is None
    assert plans[I].depends_on == P
    assert plans[S].depends_on == A
    assert plans[P].stage_group == plans[A].stage_group == 0
    assert plans[I].stage_group == plans[S].stage_group == 1


def test_predecessors_are_planned_first():
    plans = _resolve(["subtitles", "images", "audio", "prompts"])
    order = [plan.task_type for plan in plans]

    assert order.index(P) < order.index(I)
    assert order.index(A) < order.index(S)


def test_images_alone_is_an_isolated_task():
    plans = _resolve(["images"])

    assert len(plans) == 1
    assert plans[0].depends_on is None
    assert plans[0].stage_group == 0


def test_images_audio_subtitles_without_prompts():
    plans = _by_type(_resolve(["images", "audio", "subtitles"]))

    assert plans[I].depends_on is None
    assert plans[A].depends_on is None
    assert plans[S].depends_on == A


def test_subtitles_without_audio_is_rejected():
    with pytest.raises(StageValidationError):
        _resolve(["prompts", "subtitles"])


def test_unknown_stage_is_rejected():
    with pytest.raises(StageValidationError):
        _resolve(["video"])


def test_empty_stage_set_plans_nothing():
    assert normalize_stages([]) == []
    assert _resolve([]) == []


def test_duplicates_are_collapsed():
    assert normalize_stages(["audio", "audio", TaskType.PROMPTS]) == [P, A]


def test_priorities_are_offset_from_project_priority():
    plans = _by_type(
        _resolve(["prompts", "images"], priorities={P: 0, I: 5}, base_priority=10)
    )

    assert plans[P].priority == 10
    assert plans[I].priority == 15


def test_cyclic_edges_are_rejected():
    with pytest.raises(StageValidationError):
        check_acyclic({I: P, P: A, A: I})
    with pytest.raises(StageValidationError):
        resolve_stages(["images", "prompts"], {I: P, P: I})


def test_configurable_edges():
    # audio narrated from the generated prompts
    plans = _by_type(resolve_stages(["prompts", "audio", "subtitles"], {A: P, S: A}))

    assert plans[A].depends_on == P
    assert plans[S].depends_on == A
    assert plans[S].stage_group == 2


def test_config_rejects_self_edges():
    with pytest.raises(ValueError):
        QueueConfig(stage_dependencies={I: I})


@pytest.mark.parametrize(
    "current,target,allowed",
    [
        (TaskStatus.PENDING, TaskStatus.PROCESSING, True),
        (TaskStatus.PENDING, TaskStatus.CANCELLED, True),
        (TaskStatus.PROCESSING, TaskStatus.COMPLETED, True),
        (TaskStatus.PROCESSING, TaskStatus.FAILED, True),
        (TaskStatus.PROCESSING, TaskStatus.CANCELLED, True),
        (TaskStatus.FAILED, TaskStatus.PENDING, True),
        (TaskStatus.PENDING, TaskStatus.COMPLETED, False),
        (TaskStatus.COMPLETED, TaskStatus.PROCESSING, False),
        (TaskStatus.CANCELLED, TaskStatus.PENDING, False),
        (TaskStatus.COMPLETED, TaskStatus.PENDING, False),
    ],
)
def test_transitions(current, target, allowed):
    assert can_transition(current, target) is allowed
    if not allowed:
        with pytest.raises(InvalidTransition):
            check_transition("t1", current, target)


def test_terminal_states():
    assert is_terminal(TaskStatus.COMPLETED)
    assert is_terminal(TaskStatus.FAILED)
    assert is_terminal(TaskStatus.CANCELLED)
    assert not is_terminal(TaskStatus.PENDING)
    assert not is_terminal(TaskStatus.PROCESSING)
