"""Executor registry: maps each stage type to its StageExecutor.

Executors are registered programmatically or loaded from ``settings.executors``,
which holds ``"package.module:attribute"`` import paths. The attribute may be a
StageExecutor instance, a StageExecutor subclass, or a zero-argument factory.
"""

import importlib
import logging
from typing import Dict, Mapping, Optional

from genqueue.executors.base import StageExecutor
from genqueue.orchestrator.errors import ExecutionError
from genqueue.orchestrator.state import TaskType

logger = logging.getLogger(__name__)


def load_executor(import_path: str) -> StageExecutor:
    """Import and instantiate an executor from a ``module:attribute`` path."""
    module_name, sep, attr = import_path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"Executor path must look like 'module:attribute', got {import_path!r}")

    module = importlib.import_module(module_name)
    target = getattr(module, attr)
    executor = target if isinstance(target, StageExecutor) else target()
    if not isinstance(executor, StageExecutor):
        raise TypeError(f"{import_path} did not produce a StageExecutor (got {type(executor).__name__})")
    return executor


class ExecutorRegistry:
    """Lookup of the executor responsible for each TaskType."""

    def __init__(self, executors: Optional[Mapping[TaskType, StageExecutor]] = None):
        self._executors: Dict[TaskType, StageExecutor] = {}
        for task_type, executor in (executors or {}).items():
            self.register(task_type, executor)

    @classmethod
    def from_import_paths(cls, paths: Mapping[TaskType, str]) -> "ExecutorRegistry":
        registry = cls()
        for task_type, path in paths.items():
            registry.register(task_type, load_executor(path))
            logger.debug(f"Loaded {TaskType(task_type).value} executor from {path}")
        return registry

    def register(self, task_type: TaskType, executor: StageExecutor) -> None:
        self._executors[TaskType(task_type)] = executor

    def get(self, task_type: TaskType) -> StageExecutor:
        """Return the executor for ``task_type``.

        Raises:
            ExecutionError: If no executor is registered; the task fails, the loop continues
        """
        try:
            return self._executors[TaskType(task_type)]
        except KeyError:
            raise ExecutionError(
                f"No executor registered for stage {TaskType(task_type).value}"
            ) from None

    def __contains__(self, task_type) -> bool:
        return TaskType(task_type) in self._executors

    def registered(self) -> list[TaskType]:
        return sorted(self._executors, key=lambda t: t.value)
