"""Shared fixtures: a throwaway SQLite database per test and fake stage executors.

Fake executors either finish immediately (``auto=True``) or block until the
test releases them, and they record every start so tests can check the
concurrency and dependency invariants as they were observed by executors.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from genqueue.config import QueueConfig
from genqueue.db import build_engine, build_session_factory, init_database
from genqueue.executors.base import CancelToken, ExecutionResult, ProgressUpdate, StageExecutor
from genqueue.executors.registry import ExecutorRegistry
from genqueue.orchestrator.dispatcher import Scheduler
from genqueue.orchestrator.state import TaskType
from genqueue.services.task_store import TaskStore


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01):
    """Poll ``predicate`` (sync or async) until it is truthy."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        result = predicate()
        if asyncio.iscoroutine(result):
            result = await result
        if result:
            return result
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@dataclass
class ExecutionLog:
    """What all fake executors observed, shared across stage types."""

    store: Optional[TaskStore] = None
    active: Dict[str, Tuple[TaskType, str]] = field(default_factory=dict)
    started: List[str] = field(default_factory=list)
    max_per_stage: Dict[TaskType, int] = field(default_factory=dict)
    max_projects: int = 0
    dependency_violations: List[str] = field(default_factory=list)

    async def on_start(self, task) -> None:
        if task.depends_on_task_id and self.store is not None:
            predecessor = await self.store.get_task(task.depends_on_task_id)
            if predecessor.status != "completed":
                self.dependency_violations.append(task.id)
        self.started.append(task.id)
        self.active[task.id] = (task.task_type, task.project_id)
        per_stage: Dict[TaskType, int] = {}
        for task_type, _ in self.active.values():
            per_stage[task_type] = per_stage.get(task_type, 0) + 1
        for task_type, count in per_stage.items():
            self.max_per_stage[task_type] = max(self.max_per_stage.get(task_type, 0), count)
        projects = {project_id for _, project_id in self.active.values()}
        self.max_projects = max(self.max_projects, len(projects))

    def on_stop(self, task) -> None:
        self.active.pop(task.id, None)


class FakeExecutor(StageExecutor):
    """Stage executor driven by the test.

    Args:
        log: Shared ExecutionLog
        auto: Finish as soon as started instead of waiting for release()
    """

    def __init__(self, log: ExecutionLog, auto: bool = True):
        self.log = log
        self.auto = auto
        self.gates: Dict[str, asyncio.Event] = {}
        self.failures: Dict[str, Exception] = {}
        self.fail_projects: Set[str] = set()
        self.ignore_cancel = False
        self.progress_script: List[ProgressUpdate] = []
        self.cancel_calls: List[str] = []
        self.started: List[str] = []

    def gate(self, task_id: str) -> asyncio.Event:
        return self.gates.setdefault(task_id, asyncio.Event())

    def release(self, task_id: str, error: Optional[Exception] = None) -> None:
        if error is not None:
            self.failures[task_id] = error
        self.gate(task_id).set()

    def release_all(self) -> None:
        self.auto = True
        for gate in self.gates.values():
            gate.set()

    async def execute(self, task, report_progress, cancel_token: CancelToken) -> ExecutionResult:
        await self.log.on_start(task)
        self.started.append(task.id)
        try:
            for update in self.progress_script:
                await report_progress(update)
            if not self.auto:
                await self._wait(task.id, cancel_token)
            if not self.ignore_cancel:
                cancel_token.raise_if_cancelled()
            if task.id in self.failures:
                raise self.failures[task.id]
            if task.project_id in self.fail_projects:
                raise RuntimeError(f"{task.task_type.value} generation failed")
            return ExecutionResult(output={"task_id": task.id})
        finally:
            self.log.on_stop(task)

    async def _wait(self, task_id: str, cancel_token: CancelToken) -> None:
        gate = self.gate(task_id)
        waiters = [asyncio.ensure_future(gate.wait())]
        if not self.ignore_cancel:
            waiters.append(asyncio.ensure_future(cancel_token.wait()))
        try:
            await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for waiter in waiters:
                waiter.cancel()

    async def cancel(self, task_id: str) -> None:
        self.cancel_calls.append(task_id)


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'queue.db'}")
    await init_database(engine)
    yield build_session_factory(engine)
    await engine.dispose()


@pytest.fixture
def store(session_factory) -> TaskStore:
    return TaskStore(session_factory)


@pytest.fixture
def execution_log(store) -> ExecutionLog:
    return ExecutionLog(store=store)


@pytest.fixture
def executors(execution_log) -> Dict[TaskType, FakeExecutor]:
    return {task_type: FakeExecutor(execution_log) for task_type in TaskType}


@pytest.fixture
def queue_config() -> QueueConfig:
    return QueueConfig(poll_interval_seconds=0.05)


@pytest_asyncio.fixture
async def make_scheduler(store, executors):
    """Factory building schedulers over the test store; all are stopped at teardown."""
    created: List[Scheduler] = []

    def _make(config: Optional[QueueConfig] = None, registry: Optional[ExecutorRegistry] = None) -> Scheduler:
        scheduler = Scheduler(
            store=store,
            registry=registry if registry is not None else ExecutorRegistry(executors),
            config=config or QueueConfig(poll_interval_seconds=0.05),
        )
        created.append(scheduler)
        return scheduler

    yield _make

    for executor in executors.values():
        executor.release_all()
    for scheduler in created:
        await scheduler.stop()


@pytest_asyncio.fixture
async def scheduler(make_scheduler, queue_config) -> Scheduler:
    sched = make_scheduler(queue_config)
    await sched.start()
    return sched
