"""Progress reporting for long-running stages.

The notifier is created before any channel exists and is wired exactly once
at process start with :meth:`ProgressNotifier.bind`, which keeps the task
services and the push channel free of constructor cycles.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict, defaultdict, deque
from typing import Any, Optional

from novelforge_schemas import ProgressEvent, ProgressEventType, StageType

from .interfaces import ProgressChannel

logger = logging.getLogger(__name__)


class ProgressNotifier:
    """Fire-and-forget emitter; a failing channel never fails the caller."""

    def __init__(self, channel: Optional[ProgressChannel] = None) -> None:
        self._channel = channel

    def bind(self, channel: ProgressChannel) -> None:
        if self._channel is not None and self._channel is not channel:
            raise RuntimeError("Progress channel is already bound")
        self._channel = channel

    @property
    def bound(self) -> bool:
        return self._channel is not None

    async def emit(
        self,
        task_id: int,
        event_type: ProgressEventType,
        *,
        stage: Optional[StageType] = None,
        **payload: Any,
    ) -> None:
        if self._channel is None:
            return
        event = ProgressEvent(type=event_type, task_id=task_id, stage=stage, payload=payload)
        try:
            await self._channel.emit(task_id, event)
        except Exception:
            logger.warning(
                "Failed to emit progress event",
                exc_info=True,
                extra={"task_id": task_id, "event": event_type.value},
            )

    async def release(self, task_id: int) -> None:
        """Tell the channel that ``task_id`` will not run again."""

        if self._channel is None:
            return
        try:
            await self._channel.release(task_id)
        except Exception:
            logger.warning("Failed to release progress history", exc_info=True, extra={"task_id": task_id})


class ProgressBroadcaster:
    """Channel that fans events out to per-task subscriber queues.

    Used by the SSE feed. The last ``max_history`` events of every task are
    kept for replay; of the released tasks only the ``max_released`` most
    recent keep their history.
    """

    def __init__(self, max_queue_size: int = 256, max_history: int = 512, max_released: int = 64) -> None:
        self._max_queue_size = max_queue_size
        self._max_history = max_history
        self._max_released = max_released
        self._subscribers: defaultdict[int, set[asyncio.Queue[ProgressEvent]]] = defaultdict(set)
        self._history: dict[int, deque[ProgressEvent]] = {}
        self._released: OrderedDict[int, None] = OrderedDict()

    async def emit(self, task_id: int, event: ProgressEvent) -> None:
        history = self._history.get(task_id)
        if history is None:
            history = self._history[task_id] = deque(maxlen=self._max_history)
        history.append(event)
        for queue in list(self._subscribers.get(task_id, ())):
            if queue.full():
                # Slow consumer; drop its oldest event rather than block the pipeline.
                queue.get_nowait()
            queue.put_nowait(event)

    async def release(self, task_id: int) -> None:
        self._released[task_id] = None
        self._released.move_to_end(task_id)
        while len(self._released) > self._max_released:
            stale, _ = self._released.popitem(last=False)
            self._history.pop(stale, None)

    def subscribe(self, task_id: int) -> asyncio.Queue[ProgressEvent]:
        queue: asyncio.Queue[ProgressEvent] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers[task_id].add(queue)
        return queue

    def unsubscribe(self, task_id: int, queue: asyncio.Queue[ProgressEvent]) -> None:
        subscribers = self._subscribers.get(task_id)
        if subscribers is None:
            return
        subscribers.discard(queue)
        if not subscribers:
            self._subscribers.pop(task_id, None)

    def events_for(self, task_id: int) -> list[ProgressEvent]:
        return list(self._history.get(task_id, ()))
