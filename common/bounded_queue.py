from __future__ import annotations

import asyncio
from typing import Any


class BoundedQueue:
    """Drop-oldest bounded queue with a public drop counter.

    The queue wraps :class:`asyncio.Queue` and enforces the bound without
    ever blocking the producer. When the queue is full, the oldest item is
    discarded and a drop counter is incremented. It must only be touched from
    the event loop thread; hardware callbacks go through
    ``loop.call_soon_threadsafe(q.put, item)``.
    """

    def __init__(self, maxsize: int) -> None:
        if maxsize <= 0:
            raise ValueError("maxsize must be > 0")
        self._q: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.drop_ct = 0

    def put(self, item: Any) -> None:
        """Put ``item`` into the queue, dropping the oldest if full."""
        try:
            self._q.put_nowait(item)
        except asyncio.QueueFull:
            try:
                self._q.get_nowait()
            except asyncio.QueueEmpty:
                pass
            self._q.put_nowait(item)
            self.drop_ct += 1

    async def get(self) -> Any:
        """Wait for and return the next item."""
        return await self._q.get()

    def get_nowait(self) -> Any:
        return self._q.get_nowait()

    def clear(self) -> int:
        """Discard everything queued and return how many items were dropped."""
        n = 0
        while True:
            try:
                self._q.get_nowait()
            except asyncio.QueueEmpty:
                return n
            n += 1

    def empty(self) -> bool:
        return self._q.empty()
