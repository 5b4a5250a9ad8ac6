"""
Wire - Event streaming channel for one turn.

The API layer creates a Wire, hands it to the turn runner, and streams
whatever the loop writes to it until the wire is closed.

Usage:
    wire = Wire()
    task = asyncio.create_task(runner.run_turn(session_id, user_id, text, wire=wire))

    async for event in wire.read():
        yield event.to_sse()
"""

import asyncio
from typing import AsyncIterator

from coachloop.domain import StreamEvent


class Wire:
    """
    Event streaming channel backed by asyncio.Queue.

    - write(): Put an event into the channel
    - read(): Async iterate over events until closed
    - close(): Signal that no more events will be written
    """

    # Sentinel value to signal end of stream
    _SENTINEL = object()

    def __init__(self, maxsize: int = 0):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    async def write(self, event: StreamEvent) -> None:
        """Write an event; writes after close are ignored."""
        if self._closed:
            return
        await self._queue.put(event)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(self._SENTINEL)

    async def read(self) -> AsyncIterator[StreamEvent]:
        while True:
            item = await self._queue.get()
            if item is self._SENTINEL:
                # Re-put sentinel for other readers (if any)
                await self._queue.put(self._SENTINEL)
                break
            yield item

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        return f"Wire(closed={self._closed}, qsize={self._queue.qsize()})"


__all__ = ["Wire"]
