from __future__ import annotations

import asyncio
import copy
import hashlib
import json
import logging
import sqlite3
import threading
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from .base import ChangeCallback, ErrorCallback
from .db_core import canonical_json, connect, init_db, resolve_db_path, transaction

logger = logging.getLogger(__name__)

# Keys the store manages itself; never part of a revision body.
_STORE_KEYS = {"_id", "_rev", "_deleted", "_conflicts"}


class StoreError(Exception):
    status = 500
    kind = "store_error"

    def __init__(self, message: str, *, doc_id: Optional[str] = None) -> None:
        self.doc_id = doc_id
        super().__init__(message)


class NotFoundError(StoreError):
    status = 404
    kind = "not_found"


class ConflictError(StoreError):
    status = 409
    kind = "conflict"


@dataclass(frozen=True)
class RevRow:
    seq: int
    doc_id: str
    rev: str
    parent_rev: Optional[str]
    deleted: bool
    body: Dict[str, Any]

    @classmethod
    def from_sql(cls, row: sqlite3.Row) -> RevRow:
        return cls(
            seq=int(row["seq"]),
            doc_id=str(row["doc_id"]),
            rev=str(row["rev"]),
            parent_rev=row["parent_rev"],
            deleted=bool(row["deleted"]),
            body=json.loads(row["body_json"]),
        )


def rev_sort_key(rev: str) -> Tuple[int, str]:
    gen, _, digest = rev.partition("-")
    return int(gen), digest


def new_rev(parent_rev: Optional[str], body: Dict[str, Any], deleted: bool) -> str:
    gen = rev_sort_key(parent_rev)[0] + 1 if parent_rev else 1
    material = canonical_json({"parent": parent_rev, "body": body, "deleted": deleted})
    return f"{gen}-{hashlib.sha256(material.encode('utf-8')).hexdigest()[:32]}"


class RevTree:
    """All known revisions of one document."""

    def __init__(self, rows: List[RevRow]) -> None:
        self.revs: Dict[str, RevRow] = {r.rev: r for r in rows}
        parents = {r.parent_rev for r in rows if r.parent_rev}
        self.leaves: List[RevRow] = [r for r in rows if r.rev not in parents]

    def winner(self) -> Optional[RevRow]:
        if not self.leaves:
            return None
        live = [r for r in self.leaves if not r.deleted]
        return max(live or self.leaves, key=lambda r: rev_sort_key(r.rev))

    def conflicts(self) -> List[str]:
        win = self.winner()
        revs = [r.rev for r in self.leaves if not r.deleted and win is not None and r.rev != win.rev]
        return sorted(revs, key=rev_sort_key, reverse=True)

    def is_live_leaf(self, rev: str) -> bool:
        return any(r.rev == rev and not r.deleted for r in self.leaves)


class ChangesFeed:
    """Live subscription; events are handed to the subscriber's loop in commit order."""

    def __init__(
        self,
        store: LocalDocStore,
        loop: asyncio.AbstractEventLoop,
        on_change: ChangeCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self._store = store
        self._loop = loop
        self._on_change = on_change
        self._on_error = on_error
        self.cancelled = False

    def _emit(self, change: Dict[str, Any]) -> None:
        if self.cancelled:
            return
        try:
            self._loop.call_soon_threadsafe(self._deliver, change)
        except RuntimeError:
            # Subscriber loop is closed.
            self.cancel()

    def _deliver(self, change: Dict[str, Any]) -> None:
        if self.cancelled:
            return
        try:
            self._on_change(change)
        except Exception as e:
            if self._on_error is None:
                logger.error(f"changes feed delivery failed: {type(e).__name__}: {e}")
            else:
                self._on_error(e)

    def cancel(self) -> None:
        self.cancelled = True
        self._store._unsubscribe(self)


class LocalDocStore:
    """Replicated document store on SQLite.

    Keeps the full revision tree of every document, so divergent edits that
    arrive through replication surface as conflicts instead of overwriting
    each other. Blocking calls end in ``_sync``; the async methods run them
    in a worker thread.
    """

    def __init__(self, db_path: str) -> None:
        self.db_path = resolve_db_path(db_path)
        self._write_lock = threading.RLock()
        self._feeds_lock = threading.Lock()
        self._feeds: List[ChangesFeed] = []
        init_db(self.db_path)

    def __repr__(self) -> str:
        return f"LocalDocStore({str(self.db_path)!r})"

    @classmethod
    def open(cls, url: str) -> LocalDocStore:
        """Shared instance per database file.

        Change feeds only see writes made through the same instance, so
        replication and local callers should share it.
        """
        path = resolve_db_path(url)
        with _registry_lock:
            store = _registry.get(path)
            if store is None:
                store = cls(str(path))
                _registry[path] = store
            return store

    # ---- reads ----

    def _load_tree(self, conn: sqlite3.Connection, doc_id: str) -> RevTree:
        rows = conn.execute(
            "SELECT seq, doc_id, rev, parent_rev, deleted, body_json FROM doc_revs WHERE doc_id=? ORDER BY seq ASC",
            (doc_id,),
        ).fetchall()
        return RevTree([RevRow.from_sql(r) for r in rows])

    @staticmethod
    def _to_doc(row: RevRow, tree: RevTree, *, conflicts: bool) -> Dict[str, Any]:
        if row.deleted:
            return {"_id": row.doc_id, "_rev": row.rev, "_deleted": True}
        doc: Dict[str, Any] = {"_id": row.doc_id, "_rev": row.rev}
        doc.update(copy.deepcopy(row.body))
        if conflicts:
            revs = tree.conflicts()
            if revs:
                doc["_conflicts"] = revs
        return doc

    def get_sync(self, doc_id: str, *, rev: Optional[str] = None, conflicts: bool = False) -> Dict[str, Any]:
        conn = connect(self.db_path)
        try:
            tree = self._load_tree(conn, doc_id)
        finally:
            conn.close()
        if rev:
            row = tree.revs.get(rev)
            if row is None:
                raise NotFoundError(f"missing revision {doc_id}@{rev}", doc_id=doc_id)
            return self._to_doc(row, tree, conflicts=False)
        win = tree.winner()
        if win is None or win.deleted:
            raise NotFoundError(f"missing document {doc_id}", doc_id=doc_id)
        return self._to_doc(win, tree, conflicts=conflicts)

    def all_docs_sync(self, *, include_docs: bool = False, conflicts: bool = False) -> List[Dict[str, Any]]:
        conn = connect(self.db_path)
        try:
            ids = [r["doc_id"] for r in conn.execute("SELECT DISTINCT doc_id FROM doc_revs ORDER BY doc_id ASC")]
            out: List[Dict[str, Any]] = []
            for doc_id in ids:
                tree = self._load_tree(conn, doc_id)
                win = tree.winner()
                if win is None or win.deleted:
                    continue
                item: Dict[str, Any] = {"id": doc_id, "key": doc_id, "value": {"rev": win.rev}}
                if include_docs:
                    item["doc"] = self._to_doc(win, tree, conflicts=conflicts)
                out.append(item)
            return out
        finally:
            conn.close()

    def update_seq(self) -> int:
        conn = connect(self.db_path)
        try:
            row = conn.execute("SELECT COALESCE(MAX(seq), 0) AS s FROM doc_revs").fetchone()
            return int(row["s"] if row else 0)
        finally:
            conn.close()

    def revs_since(self, since: int, *, limit: int = 500) -> List[RevRow]:
        conn = connect(self.db_path)
        try:
            rows = conn.execute(
                """
                SELECT seq, doc_id, rev, parent_rev, deleted, body_json
                FROM doc_revs
                WHERE seq > ?
                ORDER BY seq ASC
                LIMIT ?
                """,
                (int(since), int(limit)),
            ).fetchall()
            return [RevRow.from_sql(r) for r in rows]
        finally:
            conn.close()

    # ---- writes ----

    def _write(self, conn: sqlite3.Connection, doc: Dict[str, Any]) -> RevRow:
        doc_id = str(doc.get("_id") or "")
        if not doc_id:
            raise StoreError("document is missing _id")
        rev = doc.get("_rev") or None
        deleted = bool(doc.get("_deleted"))
        body = {} if deleted else {k: v for k, v in doc.items() if k not in _STORE_KEYS}

        tree = self._load_tree(conn, doc_id)
        if rev:
            if not tree.is_live_leaf(rev):
                raise ConflictError(f"Document update conflict: {doc_id}@{rev}", doc_id=doc_id)
            parent: Optional[str] = rev
        else:
            win = tree.winner()
            if win is not None and not win.deleted:
                raise ConflictError(f"Document update conflict: {doc_id} already exists", doc_id=doc_id)
            if deleted:
                raise NotFoundError(f"missing document {doc_id}", doc_id=doc_id)
            parent = win.rev if win is not None else None

        rev_id = new_rev(parent, body, deleted)
        cur = conn.execute(
            "INSERT INTO doc_revs(doc_id, rev, parent_rev, deleted, body_json) VALUES(?,?,?,?,?)",
            (doc_id, rev_id, parent, 1 if deleted else 0, json.dumps(body, ensure_ascii=False)),
        )
        return RevRow(seq=int(cur.lastrowid), doc_id=doc_id, rev=rev_id, parent_rev=parent, deleted=deleted, body=body)

    def put_sync(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        with self._write_lock:
            with transaction(self.db_path) as conn:
                row = self._write(conn, doc)
            self._notify([row.doc_id])
        return {"ok": True, "id": row.doc_id, "rev": row.rev}

    def remove_sync(self, doc_id: str, rev: str) -> Dict[str, Any]:
        return self.put_sync({"_id": doc_id, "_rev": rev, "_deleted": True})

    def bulk_docs_sync(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Write each doc independently; one conflict does not abort the rest."""
        results: List[Dict[str, Any]] = []
        written: List[str] = []
        with self._write_lock:
            with transaction(self.db_path) as conn:
                for doc in docs:
                    try:
                        row = self._write(conn, doc)
                    except StoreError as e:
                        results.append({"id": doc.get("_id"), "error": e.kind, "status": e.status, "reason": str(e)})
                        continue
                    results.append({"ok": True, "id": row.doc_id, "rev": row.rev})
                    written.append(row.doc_id)
            self._notify(written)
        return results

    def insert_revs(self, rows: List[RevRow]) -> int:
        """Store revisions as-is (replication). Returns how many were new."""
        written = 0
        touched: List[str] = []
        with self._write_lock:
            with transaction(self.db_path) as conn:
                for r in rows:
                    cur = conn.execute(
                        "INSERT OR IGNORE INTO doc_revs(doc_id, rev, parent_rev, deleted, body_json) VALUES(?,?,?,?,?)",
                        (r.doc_id, r.rev, r.parent_rev, 1 if r.deleted else 0, json.dumps(r.body, ensure_ascii=False)),
                    )
                    if cur.rowcount:
                        written += 1
                        touched.append(r.doc_id)
            self._notify(list(dict.fromkeys(touched)))
        return written

    # ---- change feed ----

    def _change_for(self, conn: sqlite3.Connection, doc_id: str) -> Dict[str, Any]:
        tree = self._load_tree(conn, doc_id)
        win = tree.winner()
        if win is None:
            raise StoreError(f"no revisions stored for {doc_id}", doc_id=doc_id)
        change: Dict[str, Any] = {
            "id": doc_id,
            "seq": max(r.seq for r in tree.revs.values()),
            "changes": [{"rev": win.rev}],
            "doc": self._to_doc(win, tree, conflicts=True),
        }
        if win.deleted:
            change["deleted"] = True
        return change

    def _notify(self, doc_ids: List[str]) -> None:
        with self._feeds_lock:
            feeds = list(self._feeds)
        if not feeds or not doc_ids:
            return
        conn = connect(self.db_path)
        try:
            for doc_id in doc_ids:
                change = self._change_for(conn, doc_id)
                for feed in feeds:
                    feed._emit(copy.deepcopy(change))
        finally:
            conn.close()

    def _unsubscribe(self, feed: ChangesFeed) -> None:
        with self._feeds_lock:
            if feed in self._feeds:
                self._feeds.remove(feed)

    def changes(self, *, on_change: ChangeCallback, on_error: Optional[ErrorCallback] = None) -> ChangesFeed:
        """Subscribe to changes from now on. Must be called from the subscriber's event loop."""
        feed = ChangesFeed(self, asyncio.get_running_loop(), on_change, on_error)
        with self._feeds_lock:
            self._feeds.append(feed)
        return feed

    # ---- async API ----

    async def get(self, doc_id: str, *, rev: Optional[str] = None, conflicts: bool = False) -> Dict[str, Any]:
        return await asyncio.to_thread(self.get_sync, doc_id, rev=rev, conflicts=conflicts)

    async def all_docs(self, *, include_docs: bool = False, conflicts: bool = False) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.all_docs_sync, include_docs=include_docs, conflicts=conflicts)

    async def put(self, doc: Dict[str, Any]) -> Dict[str, Any]:
        return await asyncio.to_thread(self.put_sync, doc)

    async def remove(self, doc_id: str, rev: str) -> Dict[str, Any]:
        return await asyncio.to_thread(self.remove_sync, doc_id, rev)

    async def bulk_docs(self, docs: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self.bulk_docs_sync, docs)

    def sync(self, url: str, *, live: bool = True, retry: bool = True):
        """Start bidirectional replication with the store at ``url``."""
        from .replication import Replication

        handle = Replication(self, url, live=live, retry=retry)
        handle.start()
        return handle


_registry: "weakref.WeakValueDictionary[Path, LocalDocStore]" = weakref.WeakValueDictionary()
_registry_lock = threading.Lock()
