"""Single-slot channel between a generation task and a stream consumer."""

from __future__ import annotations

import asyncio


class TextChannel:
    """Bounded (one item) async channel of text chunks.

    The producer awaits send() for every chunk, so it never runs more than one
    chunk ahead of the consumer. close() never blocks; iteration ends once the
    channel is closed and drained.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=1)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, text: str) -> None:
        if self._closed:
            raise RuntimeError("send() on a closed TextChannel")
        await self._queue.put(text)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # The consumer sees the pending chunk, then the closed flag.
            pass

    def __aiter__(self) -> TextChannel:
        return self

    async def __anext__(self) -> str:
        if self._closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is None:
            raise StopAsyncIteration
        return item
