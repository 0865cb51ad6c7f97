"""Progress, completion and error events of sync sessions.

Workers never call consumers directly.  They ``publish()`` into a bounded
queue that drops the oldest event when full, and a single reporter task
delivers events in order to listeners and subscriptions.  A slow consumer
therefore loses intermediate progress updates instead of stalling the
worker pool.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any, Literal, Union

from pydantic import BaseModel

from .models import SyncResult

logger = logging.getLogger(__name__)

DEFAULT_QUEUE_SIZE = 256
DEFAULT_SUBSCRIPTION_SIZE = 64


class ProgressEvent(BaseModel):
    type: Literal["progress"] = "progress"
    session_id: int
    current: int
    total: int
    current_doc: str = ""
    stage: str = "downloading"

    model_config = {"frozen": True}


class CompleteEvent(BaseModel):
    type: Literal["complete"] = "complete"
    result: SyncResult

    model_config = {"frozen": True}


class ErrorEvent(BaseModel):
    type: Literal["error"] = "error"
    session_id: int | None = None
    message: str
    code: str = "sync_error"

    model_config = {"frozen": True}


SyncEvent = Union[ProgressEvent, CompleteEvent, ErrorEvent]
Listener = Callable[[SyncEvent], Any]

_STOP = object()


def _put_drop_oldest(queue: asyncio.Queue, item: Any) -> bool:
    """Put *item* without blocking; evict the oldest entry if full.

    Returns ``True`` if an entry had to be dropped.
    """
    dropped = False
    while True:
        try:
            queue.put_nowait(item)
            return dropped
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
                queue.task_done()
                dropped = True
            except asyncio.QueueEmpty:
                pass


class Subscription:
    """Async iterator over events, with its own drop-oldest buffer."""

    def __init__(self, stream: EventStream, maxsize: int) -> None:
        self._stream = stream
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    def offer(self, event: SyncEvent) -> None:
        if not self._closed:
            _put_drop_oldest(self._queue, event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stream.unsubscribe(self)
        _put_drop_oldest(self._queue, _STOP)

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> SyncEvent:
        item = await self._queue.get()
        if item is _STOP:
            raise StopAsyncIteration
        return item


class EventStream:
    """Fan-out of session events through a dedicated reporter task.

    Args:
        maxsize: Capacity of the internal queue between workers and the
            reporter task.
    """

    def __init__(self, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._listeners: list[Listener] = []
        self._subscriptions: list[Subscription] = []
        self._task: asyncio.Task | None = None
        self.dropped = 0

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def subscribe(self, maxsize: int = DEFAULT_SUBSCRIPTION_SIZE) -> Subscription:
        subscription = Subscription(self, maxsize)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def publish(self, event: SyncEvent) -> None:
        """Queue *event* for delivery.  Never blocks."""
        if _put_drop_oldest(self._queue, event):
            self.dropped += 1
            logger.debug("Event queue full; dropped oldest event")

    # ------------------------------------------------------------------
    # Reporter task
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the reporter task on the running loop (idempotent)."""
        if not self.running:
            self._task = asyncio.get_running_loop().create_task(
                self._run(), name="kb-mirror-events"
            )

    async def flush(self) -> None:
        """Wait until every queued event has been delivered."""
        if self.running:
            await self._queue.join()

    async def stop(self) -> None:
        """Deliver pending events, then stop the reporter task."""
        if not self.running:
            return
        await self._queue.put(_STOP)
        assert self._task is not None
        await self._task
        self._task = None
        for subscription in list(self._subscriptions):
            subscription.close()

    async def _run(self) -> None:
        while True:
            item = await self._queue.get()
            try:
                if item is _STOP:
                    return
                self._dispatch(item)
            finally:
                self._queue.task_done()

    def _dispatch(self, event: SyncEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("Event listener %r failed", listener)
        for subscription in list(self._subscriptions):
            subscription.offer(event)
