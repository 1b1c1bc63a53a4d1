from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from .models import ConflictInfo, DecryptionErrorEvent, SyncInfo, TableBatch


def _noop(_batches: List[TableBatch]) -> None:
    return None


@dataclass
class StoreListener:
    """Callbacks for document changes, deletions, conflicts, sync progress and errors.

    Changes and deletions arrive batched by table: a bulk load of thousands of
    documents produces one on_change call, not thousands.
    """

    on_change: Callable[[List[TableBatch]], Any] = _noop
    on_delete: Callable[[List[TableBatch]], Any] = _noop
    on_conflict: Optional[Callable[[List[ConflictInfo]], Any]] = None
    on_sync: Optional[Callable[[SyncInfo], Any]] = None
    on_error: Optional[Callable[[List[DecryptionErrorEvent]], Any]] = None


class Notifier:
    """Fires a listener callback only if it is registered and there is something to report.

    Any object exposing the StoreListener attribute names works as a listener.
    """

    def __init__(self, listener: Any = None) -> None:
        self.listener = listener if listener is not None else StoreListener()

    def _callback(self, name: str) -> Optional[Callable[..., Any]]:
        return getattr(self.listener, name, None)

    def change(self, batches: List[TableBatch]) -> None:
        cb = self._callback("on_change")
        if cb is not None and batches:
            cb(batches)

    def delete(self, batches: List[TableBatch]) -> None:
        cb = self._callback("on_delete")
        if cb is not None and batches:
            cb(batches)

    def conflict(self, conflicts: List[ConflictInfo]) -> None:
        cb = self._callback("on_conflict")
        if cb is not None and conflicts:
            cb(conflicts)

    def error(self, errors: List[DecryptionErrorEvent]) -> None:
        cb = self._callback("on_error")
        if cb is not None and errors:
            cb(errors)

    def sync(self, info: SyncInfo) -> None:
        cb = self._callback("on_sync")
        if cb is not None:
            cb(info)
