from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, List

import pytest

from storage.docstore import LocalDocStore
from sync.models import ConflictInfo, DecryptionErrorEvent, SyncInfo, TableBatch


class Recorder:
    """Listener that keeps every notification it gets."""

    def __init__(self, *, conflicts: bool = False) -> None:
        self.changes: List[List[TableBatch]] = []
        self.deletes: List[List[TableBatch]] = []
        self.errors: List[List[DecryptionErrorEvent]] = []
        self.conflicts: List[List[ConflictInfo]] = []
        self.syncs: List[SyncInfo] = []
        if conflicts:
            self.on_conflict = self.conflicts.append

    def on_change(self, batches: List[TableBatch]) -> None:
        self.changes.append(batches)

    def on_delete(self, batches: List[TableBatch]) -> None:
        self.deletes.append(batches)

    def on_error(self, errors: List[DecryptionErrorEvent]) -> None:
        self.errors.append(errors)

    def on_sync(self, info: SyncInfo) -> None:
        self.syncs.append(info)

    def changed_docs(self, table: str | None = None) -> List[dict]:
        return [d for call in self.changes for b in call if table is None or b.table == table for d in b.docs]

    def deleted_ids(self, table: str | None = None) -> List[str]:
        return [d["_id"] for call in self.deletes for b in call if table is None or b.table == table for d in b.docs]


@pytest.fixture
def make_db(tmp_path) -> Callable[[str], LocalDocStore]:
    def _make(name: str = "local") -> LocalDocStore:
        return LocalDocStore.open(str(tmp_path / f"{name}.sqlite3"))

    return _make


@pytest.fixture
def recorder() -> Callable[..., Recorder]:
    return Recorder


async def eventually(predicate: Callable[[], Any], timeout: float = 5.0, interval: float = 0.05) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    return eventually
