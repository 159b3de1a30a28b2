"""In-process event bus for scheduler notifications.

Publishing never blocks: every subscriber owns an unbounded queue and a pump
task that feeds its callback, so a slow callback only delays its own
deliveries. Events reach each subscriber in emission order.

Event kinds:
- ``progress``: task_id, progress, progress_details
- ``status_change``: task_id, status, error, and the executor output on completion
- ``pipeline_complete``: the processing set just drained to empty
- ``project_complete``: project_id, status once every task of a project is terminal
"""

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, FrozenSet, Iterable, List, Optional

from genqueue.db.models import utcnow
from genqueue.orchestrator.state import TaskStatus

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    PROGRESS = "progress"
    STATUS_CHANGE = "status_change"
    PIPELINE_COMPLETE = "pipeline_complete"
    PROJECT_COMPLETE = "project_complete"


@dataclass(frozen=True)
class Event:
    """One notification published by the scheduler."""

    kind: EventKind
    task_id: Optional[str] = None
    project_id: Optional[str] = None
    status: Optional[TaskStatus] = None
    progress: Optional[int] = None
    progress_details: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    output: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly form, omitting fields the event kind does not carry."""
        data: Dict[str, Any] = {
            "kind": self.kind.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.task_id is not None:
            data["task_id"] = self.task_id
        if self.project_id is not None:
            data["project_id"] = self.project_id
        if self.status is not None:
            data["status"] = TaskStatus(self.status).value
        if self.progress is not None:
            data["progress"] = self.progress
        if self.progress_details is not None:
            data["progress_details"] = self.progress_details
        if self.error is not None:
            data["error"] = self.error
        if self.output is not None:
            data["output"] = self.output
        return data


EventCallback = Callable[[Event], Any]


class Subscription:
    """A registered callback with its private queue and pump task."""

    def __init__(
        self,
        bus: "EventBus",
        callback: EventCallback,
        kinds: Optional[FrozenSet[EventKind]] = None,
    ):
        self.bus = bus
        self.callback = callback
        self.kinds = kinds
        self.queue: asyncio.Queue = asyncio.Queue()
        self._pump: Optional[asyncio.Task] = None

    def wants(self, event: Event) -> bool:
        return self.kinds is None or event.kind in self.kinds

    def deliver(self, event: Event) -> None:
        self.queue.put_nowait(event)
        self._ensure_pump()

    def _ensure_pump(self) -> None:
        if self._pump is not None and not self._pump.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop yet; the pump starts on the first delivery inside one
            return
        self._pump = loop.create_task(self._run())

    async def _run(self) -> None:
        while True:
            event = await self.queue.get()
            try:
                result = self.callback(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Event subscriber {self.callback!r} failed on {event.kind.value}")
            finally:
                self.queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued event has been handed to the callback."""
        self._ensure_pump()
        await self.queue.join()

    def unsubscribe(self) -> None:
        self.bus.unsubscribe(self)

    def close(self) -> None:
        if self._pump is not None and not self._pump.done():
            self._pump.cancel()
        self._pump = None


class EventBus:
    """Fan-out of scheduler events to any number of subscribers."""

    def __init__(self):
        self._subscriptions: List[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        callback: EventCallback,
        kinds: Optional[Iterable[EventKind]] = None,
    ) -> Subscription:
        """Register ``callback`` (sync or async) for the given event kinds (all if None)."""
        subscription = Subscription(
            self,
            callback,
            frozenset(EventKind(k) for k in kinds) if kinds is not None else None,
        )
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)
        subscription.close()

    def publish(self, event: Event) -> None:
        """Queue ``event`` for every interested subscriber and return immediately."""
        for subscription in list(self._subscriptions):
            if subscription.wants(event):
                subscription.deliver(event)

    async def stream(self, kinds: Optional[Iterable[EventKind]] = None) -> AsyncIterator[Event]:
        """Async iterator over events published from now on (used by the SSE route)."""
        inbox: asyncio.Queue = asyncio.Queue()
        subscription = self.subscribe(inbox.put_nowait, kinds)
        try:
            while True:
                yield await inbox.get()
        finally:
            self.unsubscribe(subscription)

    async def drain(self) -> None:
        """Wait until all subscribers have consumed what was published so far."""
        for subscription in list(self._subscriptions):
            await subscription.drain()

    def suspend(self) -> None:
        """Stop every pump task. Subscriptions stay registered and their pumps
        restart on the next published event."""
        for subscription in self._subscriptions:
            subscription.close()
