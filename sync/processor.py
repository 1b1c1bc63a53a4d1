from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class SerializedProcessor:
    """Single-consumer queue: handler(item) runs for one item at a time, in submit order.

    A slow item holds back everything submitted after it. A failing item is
    logged and the worker moves on to the next one.
    """

    def __init__(self, handler: Callable[[Any], Awaitable[None]], *, name: str = "changes") -> None:
        self._handler = handler
        self.name = name
        self._queue: Optional[asyncio.Queue] = None
        self._worker: Optional[asyncio.Task] = None
        self.processed = 0
        self.failed = 0

    def submit(self, item: Any) -> None:
        """Enqueue without waiting. Must be called from the event loop."""
        if self._queue is None:
            self._queue = asyncio.Queue()
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(self._run(self._queue))
        self._queue.put_nowait(item)

    async def _run(self, queue: asyncio.Queue) -> None:
        while True:
            item = await queue.get()
            try:
                await self._handler(item)
                self.processed += 1
            except Exception:
                self.failed += 1
                logger.exception(f"{self.name}: handler failed")
            finally:
                queue.task_done()

    @property
    def pending(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def drain(self) -> None:
        """Wait until every submitted item has been handled."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self, *, drain: bool = True) -> None:
        if drain:
            await self.drain()
        worker, self._worker = self._worker, None
        if worker is not None and not worker.done():
            worker.cancel()
            try:
                await worker
            except asyncio.CancelledError:
                pass
