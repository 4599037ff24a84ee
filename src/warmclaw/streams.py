"""Single-consumer async stream of container output frames.

A cold-start run produces result frames from a stdout reader task while
the caller wants to handle them in order. ``OutputStream`` bridges the
two: the producer calls ``put()`` for every frame and ``close()`` when the
run finishes; the consumer iterates with ``async for``.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator

from warmclaw.types import ContainerOutput

_CLOSED = object()


class OutputStream:
    """Async iterator over ContainerOutput frames from one container run."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._closed = False
        self._consumed = False

    @property
    def closed(self) -> bool:
        """True once close() has been called."""
        return self._closed

    async def put(self, output: ContainerOutput) -> None:
        """Push one frame. Usable directly as a container on_output callback.

        Raises:
            RuntimeError: If the stream has already been closed.
        """
        if self._closed:
            raise RuntimeError("OutputStream is closed")
        await self._queue.put(output)

    def close(self) -> None:
        """Mark the end of the stream. Idempotent."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> AsyncIterator[ContainerOutput]:
        if self._consumed:
            raise RuntimeError("OutputStream supports a single consumer")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ContainerOutput]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            assert isinstance(item, ContainerOutput)
            yield item
