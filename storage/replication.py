from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from core.settings import (
    SYNC_BATCH_SIZE,
    SYNC_POLL_INTERVAL_S,
    SYNC_RETRY_BACKOFF_S,
    SYNC_RETRY_MAX_BACKOFF_S,
)

from .docstore import LocalDocStore

logger = logging.getLogger(__name__)

DIRECTIONS = ("push", "pull")


def empty_stats() -> Dict[str, Any]:
    return {"docs_read": 0, "docs_written": 0, "doc_write_failures": 0, "errors": []}


class Replication:
    """Bidirectional replication between a local store and the store at ``url``.

    One-shot handles run a single push+pull round and emit ``complete``.
    Live handles poll for new revisions until cancelled. Every revision is
    copied with its parent link, so concurrent edits become conflicts on
    both sides.
    """

    def __init__(
        self,
        local: LocalDocStore,
        url: str,
        *,
        live: bool = True,
        retry: bool = True,
        poll_interval_s: float | None = None,
        backoff_s: float | None = None,
        batch_size: int | None = None,
    ) -> None:
        self.local = local
        self.url = url
        self.live = bool(live)
        self.retry = bool(retry)
        self.poll_interval_s = SYNC_POLL_INTERVAL_S if poll_interval_s is None else float(poll_interval_s)
        self.backoff_s = SYNC_RETRY_BACKOFF_S if backoff_s is None else float(backoff_s)
        self.batch_size = SYNC_BATCH_SIZE if batch_size is None else int(batch_size)
        self.remote: Optional[LocalDocStore] = None
        self.totals: Dict[str, Dict[str, Any]] = {d: empty_stats() for d in DIRECTIONS}
        self._checkpoints: Dict[str, int] = {d: 0 for d in DIRECTIONS}
        self._listeners: Dict[str, List[Callable[..., Any]]] = defaultdict(list)
        self._task: Optional[asyncio.Task] = None
        self.cancelled = False

    # ---- event emitter ----

    def on(self, event: str, callback: Callable[..., Any]) -> Replication:
        self._listeners[event].append(callback)
        return self

    def remove_listener(self, event: str, callback: Callable[..., Any]) -> None:
        try:
            self._listeners[event].remove(callback)
        except ValueError:
            pass

    def _emit(self, event: str, *args: Any) -> None:
        for cb in list(self._listeners.get(event, ())):
            try:
                cb(*args)
            except Exception:
                logger.exception(f"sync '{event}' listener failed")

    # ---- lifecycle ----

    def start(self) -> None:
        self._task = asyncio.get_running_loop().create_task(self._run())

    def cancel(self) -> None:
        if self.cancelled:
            return
        self.cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    # ---- replication (worker thread) ----

    def _open_remote(self) -> LocalDocStore:
        if self.remote is None:
            self.remote = LocalDocStore.open(self.url)
        return self.remote

    def _has_pending(self) -> bool:
        remote = self._open_remote()
        return (
            self.local.update_seq() > self._checkpoints["push"]
            or remote.update_seq() > self._checkpoints["pull"]
        )

    def _replicate(self, direction: str) -> Dict[str, Any]:
        remote = self._open_remote()
        source, target = (self.local, remote) if direction == "push" else (remote, self.local)
        stats = empty_stats()
        since = self._checkpoints[direction]
        while True:
            rows = source.revs_since(since, limit=self.batch_size)
            if not rows:
                break
            stats["docs_read"] += len(rows)
            stats["docs_written"] += target.insert_revs(rows)
            since = rows[-1].seq
        self._checkpoints[direction] = since
        return stats

    async def _round(self) -> Dict[str, Dict[str, Any]]:
        out: Dict[str, Dict[str, Any]] = {}
        for direction in DIRECTIONS:
            stats = await asyncio.to_thread(self._replicate, direction)
            total = self.totals[direction]
            for key in ("docs_read", "docs_written", "doc_write_failures"):
                total[key] += stats[key]
            if stats["docs_written"] > 0:
                self._emit("change", {"direction": direction, "change": stats})
            out[direction] = stats
        return out

    async def _sleep_backoff(self, attempt: int) -> None:
        delay = self.backoff_s * (2 ** attempt)
        if delay > SYNC_RETRY_MAX_BACKOFF_S:
            delay = SYNC_RETRY_MAX_BACKOFF_S
        await asyncio.sleep(delay)

    async def _run(self) -> None:
        attempt = 0
        while not self.cancelled:
            try:
                pending = await asyncio.to_thread(self._has_pending)
                if pending or not self.live:
                    self._emit("active")
                    result = await self._round()
                    if not self.live:
                        self._emit("complete", {"status": "complete", **result})
                        return
                    self._emit("paused")
            except asyncio.CancelledError:
                raise
            except Exception as e:
                if self.live and self.retry:
                    logger.warning(f"replication to {self.url} failed, retrying: {type(e).__name__}: {e}")
                    await self._sleep_backoff(attempt)
                    attempt += 1
                    continue
                self._emit("error", e)
                return
            attempt = 0
            await asyncio.sleep(self.poll_interval_s)
