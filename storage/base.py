# storage/base.py
from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional, Protocol

ChangeCallback = Callable[[Dict[str, Any]], None]
ErrorCallback = Callable[[BaseException], None]


def is_not_found(exc: BaseException) -> bool:
    return getattr(exc, "status", None) == 404


def is_conflict(exc: BaseException) -> bool:
    return getattr(exc, "status", None) == 409


class Cancellable(Protocol):
    def cancel(self) -> None:
        ...


class SyncHandle(Protocol):
    """Running replication between a local store and a remote.

    Events: ``active()``, ``paused()``, ``change(info)`` where info is
    ``{"direction": "push"|"pull", "change": stats}``, ``complete(info)`` where
    info carries ``push``/``pull`` stats, and ``error(exc)``.
    """

    def on(self, event: str, callback: Callable[..., Any]) -> "SyncHandle":
        ...

    def remove_listener(self, event: str, callback: Callable[..., Any]) -> None:
        ...

    def cancel(self) -> None:
        ...


class DocStore(Protocol):
    """Capabilities the encrypted layer needs from a replicated document store.

    Records are plain dicts using ``_id``/``_rev``/``_deleted``/``_conflicts``
    metadata keys. Implementations should:
    - raise a not-found error (status 404) for missing documents/revisions
    - raise a conflict error (status 409) for writes with a stale ``_rev``
    - deliver change events in commit order on the subscriber's event loop
    """

    async def all_docs(self, *, include_docs: bool = False, conflicts: bool = False) -> List[Dict[str, Any]]:
        ...

    async def get(self, doc_id: str, *, rev: Optional[str] = None, conflicts: bool = False) -> Dict[str, Any]:
        ...

    async def put(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        ...

    async def remove(self, doc_id: str, rev: str) -> Dict[str, Any]:
        ...

    async def bulk_docs(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        ...

    def changes(self, *, on_change: ChangeCallback, on_error: Optional[ErrorCallback] = None) -> Cancellable:
        ...

    def sync(self, url: str, *, live: bool = True, retry: bool = True) -> SyncHandle:
        ...
