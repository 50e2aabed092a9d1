"""Progress channel: per-operation event stream from publish to caller.

Delivery is best-effort: events are queued in memory with no retry and no
acknowledgement, and once the consumer detaches (client disconnect) further
events are dropped. The operation itself keeps running in a background task
and persists its terminal state whether or not anyone is listening. This
includes the upload phase: a disconnect never aborts an upload.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Awaitable, Callable

from cleo_shared.models.progress import Error, ProgressEvent

logger = logging.getLogger(__name__)

# Strong references to running operations; asyncio only keeps weak ones.
_operations: set[asyncio.Task] = set()

_CLOSED = object()

Emit = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Unbounded, single-consumer event queue.

    Usage:
        channel = start_operation(lambda ch: executor.run(post_id, owner, ch.emit), name="...")
        async for event in channel:
            ...
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._detached = False
        self.dropped = 0
        self.last_event: ProgressEvent | None = None
        self.task: asyncio.Task | None = None

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, event: ProgressEvent) -> None:
        """Queue an event. Never blocks and never raises."""
        self.last_event = event
        if self._closed or self._detached:
            self.dropped += 1
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._queue.put_nowait(_CLOSED)

    def detach(self) -> None:
        """Consumer went away: stop buffering, let the operation finish unobserved."""
        if self._detached:
            return
        self._detached = True
        while not self._queue.empty():
            self._queue.get_nowait()
        if self.task is not None and not self.task.done():
            logger.info("Progress consumer detached; %s continues in background", self.task.get_name())

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    async def collect(self) -> list[ProgressEvent]:
        return [event async for event in self]


def start_operation(
    operation: Callable[[ProgressChannel], Awaitable[Any]], *, name: str
) -> ProgressChannel:
    """Run ``operation`` in a background task bound to a fresh channel.

    The channel is closed when the operation returns. An unexpected exception
    becomes a terminal ``error`` event so the stream still ends properly.
    """
    channel = ProgressChannel()

    async def _runner() -> None:
        try:
            await operation(channel)
        except Exception as e:
            logger.exception("Operation %s crashed", name)
            channel.emit(Error(message=str(e) or type(e).__name__, code="failed"))
        finally:
            channel.close()

    task = asyncio.create_task(_runner(), name=name)
    _operations.add(task)
    task.add_done_callback(_operations.discard)
    channel.task = task
    return channel


def to_sse(event: ProgressEvent) -> str:
    """Server-Sent Events frame for one event."""
    return f"data: {json.dumps(event.to_wire(), ensure_ascii=False)}\n\n"
