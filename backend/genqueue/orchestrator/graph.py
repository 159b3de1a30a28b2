"""Dependency graph resolution for a project's requested stages.

Given the stages a project asks for, produces one TaskPlan per stage with its
predecessor stage (if that predecessor was also requested) and its stage group
(depth in the requested sub-graph). The edge set is configuration, not code:
``QueueConfig.stage_dependencies`` maps a stage to the single stage whose
output it consumes, and ``QueueConfig.stage_requirements`` lists stages that
cannot be requested without another one.

Default edges: prompts -> images, audio -> subtitles. prompts and audio have
no predecessor and may start together.
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional

from genqueue.orchestrator.errors import StageValidationError
from genqueue.orchestrator.state import TaskType

logger = logging.getLogger(__name__)

# Creation order inside one stage group
STAGE_ORDER = (TaskType.PROMPTS, TaskType.AUDIO, TaskType.IMAGES, TaskType.SUBTITLES)


@dataclass(frozen=True)
class TaskPlan:
    """One task to create for a project."""

    task_type: TaskType
    depends_on: Optional[TaskType]
    stage_group: int
    priority: int


def normalize_stages(requested: Iterable) -> List[TaskType]:
    """Deduplicate and validate stage names, returning them in creation order.

    Raises:
        StageValidationError: If a name is not a known stage
    """
    stages = set()
    for raw in requested:
        try:
            stages.add(TaskType(raw))
        except ValueError:
            raise StageValidationError(
                f"Unknown stage: {raw!r}. Known stages: {[t.value for t in STAGE_ORDER]}"
            ) from None
    return [stage for stage in STAGE_ORDER if stage in stages]


def check_acyclic(dependencies: Mapping[TaskType, TaskType]) -> None:
    """Raise StageValidationError if following predecessors ever loops."""
    for start in dependencies:
        seen = {start}
        current = dependencies.get(start)
        while current is not None:
            if current in seen:
                raise StageValidationError(
                    f"Stage dependency cycle through {current.value}"
                )
            seen.add(current)
            current = dependencies.get(current)


def _stage_group(
    stage: TaskType,
    requested: set,
    dependencies: Mapping[TaskType, TaskType],
) -> int:
    depth = 0
    current = dependencies.get(stage)
    while current is not None and current in requested:
        depth += 1
        current = dependencies.get(current)
    return depth


def resolve_stages(
    requested: Iterable,
    dependencies: Mapping[TaskType, TaskType],
    requirements: Optional[Mapping[TaskType, TaskType]] = None,
    priorities: Optional[Mapping[TaskType, int]] = None,
    base_priority: int = 0,
) -> List[TaskPlan]:
    """Compute the task set for a project's requested stages.

    Args:
        requested: Stage names or TaskType values the project enables
        dependencies: stage -> predecessor stage whose output it consumes
        requirements: stage -> stage that must also be requested
        priorities: per-stage priority offset (lower dispatched first)
        base_priority: project-level priority added to every task

    Returns:
        Plans ordered so every predecessor precedes its dependents

    Raises:
        StageValidationError: Unknown stage, missing required stage, or cyclic edges
    """
    stages = normalize_stages(requested)
    requested_set = set(stages)
    check_acyclic(dependencies)

    for stage, required in (requirements or {}).items():
        if stage in requested_set and required not in requested_set:
            raise StageValidationError(
                f"Stage {stage.value} requires {required.value} to be requested"
            )

    plans: List[TaskPlan] = []
    for stage in stages:
        predecessor = dependencies.get(stage)
        if predecessor not in requested_set:
            # Requested alone: isolated task with no predecessor
            predecessor = None
        plans.append(
            TaskPlan(
                task_type=stage,
                depends_on=predecessor,
                stage_group=_stage_group(stage, requested_set, dependencies),
                priority=base_priority + (priorities or {}).get(stage, 0),
            )
        )

    plans.sort(key=lambda plan: (plan.stage_group, STAGE_ORDER.index(plan.task_type)))
    edges = [(p.task_type.value, p.depends_on.value if p.depends_on else None) for p in plans]
    logger.debug(f"Resolved stages {[s.value for s in stages]} -> {edges}")
    return plans

