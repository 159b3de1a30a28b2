"""Stage executor abstraction layer.

Provides the contract the scheduler drives for every stage type, a registry
selecting one executor per stage, and a fan-out helper for stages that
generate many units in parallel.

Usage:
    from genqueue.executors import ExecutorRegistry, StageExecutor

    registry = ExecutorRegistry({TaskType.IMAGES: MyImageExecutor()})
    executor = registry.get(TaskType.IMAGES)
"""

from genqueue.executors.base import (
    CancelToken,
    ExecutionResult,
    ProgressUpdate,
    ReportProgress,
    StageExecutor,
)
from genqueue.executors.fanout import FanOutResult, FanOutRunner
from genqueue.executors.registry import ExecutorRegistry, load_executor

__all__ = [
    "CancelToken",
    "ExecutionResult",
    "ExecutorRegistry",
    "FanOutResult",
    "FanOutRunner",
    "ProgressUpdate",
    "ReportProgress",
    "StageExecutor",
    "load_executor",
]
