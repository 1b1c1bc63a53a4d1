from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from core.settings import DELETE_SYNC_TIMEOUT_S, SYNC_CONNECT_TIMEOUT_S
from storage.base import DocStore, SyncHandle

from .errors import SyncNotConnectedError, SyncTimeoutError
from .listener import Notifier
from .models import SyncInfo, SyncStats

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED_LIVE = "connected_live"
    CONNECTED_MANUAL = "connected_manual"


class SyncCoordinator:
    """Owns the sync handle to a remote and the waits around it."""

    def __init__(
        self,
        db: DocStore,
        notifier: Notifier,
        *,
        connect_timeout_s: float = SYNC_CONNECT_TIMEOUT_S,
        delete_timeout_s: float = DELETE_SYNC_TIMEOUT_S,
    ) -> None:
        self.db = db
        self.notifier = notifier
        self.connect_timeout_s = float(connect_timeout_s)
        self.delete_timeout_s = float(delete_timeout_s)
        self.state = SyncState.DISCONNECTED
        self.remote_url: Optional[str] = None
        self.handle: Optional[SyncHandle] = None

    def _on_handle_change(self, info: Dict[str, Any]) -> None:
        self.notifier.sync(
            SyncInfo(direction=info.get("direction", "both"), change=SyncStats.from_dict(info.get("change") or {}))
        )

    def _on_handle_error(self, err: BaseException) -> None:
        logger.error(f"sync error ({self.remote_url}): {type(err).__name__}: {err}")

    async def connect_remote(self, url: str, *, live: bool = True, retry: bool = True) -> None:
        """Open a bidirectional sync and wait for it to become active.

        Silence for connect_timeout_s counts as connected; an error reported
        by the handle in that window tears the connection down and is raised.
        """
        self.disconnect_remote()
        self.remote_url = url
        self.state = SyncState.CONNECTING

        handle = self.db.sync(url, live=live, retry=retry)
        self.handle = handle
        handle.on("change", self._on_handle_change)
        handle.on("error", self._on_handle_error)

        started: asyncio.Future = asyncio.get_running_loop().create_future()

        def _active(*_args: Any) -> None:
            if not started.done():
                started.set_result(None)

        def _error(err: BaseException) -> None:
            if not started.done():
                started.set_exception(err)

        handle.on("active", _active)
        handle.on("error", _error)
        try:
            await asyncio.wait_for(started, timeout=self.connect_timeout_s)
        except asyncio.TimeoutError:
            logger.info(f"no sync activity from {url} within {self.connect_timeout_s}s; continuing")
        except BaseException:
            self.disconnect_remote()
            raise
        finally:
            handle.remove_listener("active", _active)
            handle.remove_listener("error", _error)

        self.state = SyncState.CONNECTED_LIVE if live else SyncState.CONNECTED_MANUAL
        logger.info(f"connected to {url} (live={live}, retry={retry})")

    def disconnect_remote(self) -> None:
        if self.handle is not None:
            self.handle.cancel()
            self.handle = None
            logger.info(f"disconnected from {self.remote_url}")
        self.remote_url = None
        self.state = SyncState.DISCONNECTED

    async def sync_now(self) -> None:
        """One-shot sync; reports push and pull statistics through on_sync."""
        if not self.remote_url:
            raise SyncNotConnectedError("No remote connection configured. Call connect_remote() first.")

        handle = self.db.sync(self.remote_url, live=False, retry=False)
        done: asyncio.Future = asyncio.get_running_loop().create_future()

        def _complete(info: Dict[str, Any]) -> None:
            if not done.done():
                done.set_result(info)

        def _error(err: BaseException) -> None:
            logger.error(f"sync_now error ({self.remote_url}): {type(err).__name__}: {err}")
            if not done.done():
                done.set_exception(err)

        handle.on("complete", _complete)
        handle.on("error", _error)
        try:
            info = await done
        finally:
            handle.cancel()

        for direction in ("push", "pull"):
            stats = info.get(direction)
            if stats and stats.get("docs_written") is not None:
                self.notifier.sync(SyncInfo(direction=direction, change=SyncStats.from_dict(stats)))

    async def delete_and_wait(self, delete_all: Callable[[], Awaitable[int]]) -> int:
        """Run ``delete_all`` and wait until the running sync has pushed that many docs.

        Returns the number of deleted documents.
        """
        handle = self.handle
        if handle is None:
            raise SyncNotConnectedError(
                "Sync is not connected. Call connect_remote() first or use delete_all_local() instead."
            )

        pushed = 0
        expected: Optional[int] = None
        done: asyncio.Future = asyncio.get_running_loop().create_future()

        def _change(info: Dict[str, Any]) -> None:
            nonlocal pushed
            if info.get("direction") != "push":
                return
            pushed += int((info.get("change") or {}).get("docs_written") or 0)
            if expected is not None and pushed >= expected and not done.done():
                done.set_result(None)

        def _error(err: BaseException) -> None:
            if not done.done():
                done.set_exception(err)

        # Listen before deleting so a fast push is not missed.
        handle.on("change", _change)
        handle.on("error", _error)
        try:
            expected = await delete_all()
            if expected == 0 or pushed >= expected:
                return expected
            try:
                await asyncio.wait_for(done, timeout=self.delete_timeout_s)
            except asyncio.TimeoutError as e:
                raise SyncTimeoutError(
                    f"Timeout waiting for deletions to sync to remote ({pushed}/{expected} pushed)"
                ) from e
            return expected
        finally:
            handle.remove_listener("change", _change)
            handle.remove_listener("error", _error)
