from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Union

from storage.base import Cancellable, DocStore, is_conflict, is_not_found

from .conflicts import ConflictResolver
from .coordinator import SyncCoordinator, SyncState
from .crypto import CipherEngine
from .errors import RevisionConflictError
from .events import ChangeTranslator
from .listener import Notifier
from .models import ConflictInfo, DecryptionErrorEvent, Doc, RemoteOptions, StoreOptions
from .processor import SerializedProcessor
from .records import ID_FIELD, REV_FIELD, RecordCodec, encode_id, is_system_id

logger = logging.getLogger(__name__)


class EncryptedStore:
    """Encrypted documents on top of a replicated document store.

    The store only ever sees ``{_id: "<table>_<id>", _rev, d: "<nonce>|<ciphertext>"}``.
    Callers work with plain ``{"_id", "_rev", **fields}`` dicts per table and
    get batched callbacks for changes, deletions, conflicts, sync and
    decryption errors.

    Example::

        store = EncryptedStore(LocalDocStore("app.sqlite3"), "my-password", listener)
        await store.load_all()
        await store.put("expenses", {"_id": "lunch", "amount": 15})
        doc = await store.get("expenses", "lunch")
    """

    def __init__(
        self,
        db: DocStore,
        passphrase: str,
        listener: Any = None,
        options: Union[StoreOptions, Dict[str, Any], None] = None,
    ) -> None:
        if options is None:
            options = StoreOptions()
        elif isinstance(options, dict):
            options = StoreOptions(**options)
        self.db = db
        self.options = options
        self.cipher = CipherEngine(passphrase, options.passphrase_mode)
        self.codec = RecordCodec(self.cipher)
        self.notifier = Notifier(listener)
        self.resolver = ConflictResolver(db, self.codec, self.notifier)
        self.translator = ChangeTranslator(db, self.codec, self.resolver, self.notifier)
        self.coordinator = SyncCoordinator(
            db,
            self.notifier,
            connect_timeout_s=options.connect_timeout_s,
            delete_timeout_s=options.delete_sync_timeout_s,
        )
        self.processor = SerializedProcessor(self.translator.handle_change, name="live-changes")
        self._changes: Optional[Cancellable] = None

    async def __aenter__(self) -> "EncryptedStore":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ---- loading / live changes ----

    async def load_all(self) -> None:
        """Decrypt everything once, notify, then start listening for live changes.

        A failing scan is logged; the live subscription starts regardless.
        With ``strict_load`` the failure is re-raised after that.
        """
        failure: Optional[Exception] = None
        try:
            await self.translator.load()
        except Exception as e:
            logger.exception(f"load_all failed: {type(e).__name__}: {e}")
            failure = e

        self._setup_subscription()
        if failure is not None and self.options.strict_load:
            raise failure

    def _setup_subscription(self) -> None:
        self._changes = self.db.changes(on_change=self.processor.submit, on_error=self._on_feed_error)

    @staticmethod
    def _on_feed_error(err: BaseException) -> None:
        logger.error(f"changes feed error: {type(err).__name__}: {err}")

    def reconnect(self) -> None:
        """Restart the live change subscription. Already queued events still run first."""
        if self._changes is not None:
            self._changes.cancel()
            self._changes = None
        self._setup_subscription()

    async def wait_idle(self) -> None:
        """Wait until every live change received so far has been dispatched."""
        await self.processor.drain()

    async def close(self) -> None:
        if self._changes is not None:
            self._changes.cancel()
            self._changes = None
        self.coordinator.disconnect_remote()
        await self.processor.close()

    # ---- documents ----

    async def put(self, table: str, doc: Doc) -> Doc:
        """Create or update a document; a stale ``_rev`` raises RevisionConflictError."""
        doc = dict(doc)
        if not doc.get(ID_FIELD):
            doc[ID_FIELD] = str(uuid.uuid4())

        full_id = encode_id(table, doc[ID_FIELD])
        record = await self.codec.encrypt_doc(doc, full_id)
        if doc.get(REV_FIELD):
            record[REV_FIELD] = doc[REV_FIELD]

        try:
            result = await self.db.put(record)
        except Exception as e:
            if is_conflict(e):
                raise RevisionConflictError(
                    f"Revision conflict on {full_id}: {e}", table=table, doc_id=doc[ID_FIELD]
                ) from e
            raise

        doc[REV_FIELD] = result["rev"]
        return doc

    async def get(self, table: str, doc_id: str) -> Optional[Doc]:
        full_id = encode_id(table, doc_id)
        try:
            record = await self.db.get(full_id, conflicts=True)
        except Exception as e:
            if is_not_found(e):
                return None
            raise

        try:
            doc = await self.codec.decrypt_record(record)
        except Exception as e:
            self.notifier.error([DecryptionErrorEvent(doc_id=full_id, error=e, raw_doc=record)])
            return None

        conflict_revs = record.get("_conflicts") or []
        if conflict_revs:
            info = await self.resolver.build_conflict_info(full_id, record[REV_FIELD], conflict_revs, doc)
            self.notifier.conflict([info])
        return doc

    async def delete(self, table: str, doc_id: str) -> None:
        """Delete a document. Failures are logged, not raised."""
        full_id = encode_id(table, doc_id)
        try:
            record = await self.db.get(full_id)
            await self.db.remove(full_id, record[REV_FIELD])
        except Exception as e:
            logger.warning(f"Could not delete {full_id}: {type(e).__name__}: {e}")

    async def get_all(self, table: Optional[str] = None) -> List[Doc]:
        result = await self.translator.scan(table=table)
        self.notifier.error(result.errors)
        return result.docs

    async def _delete_all_records(self) -> int:
        rows = await self.db.all_docs(include_docs=False)
        deletions = [
            {ID_FIELD: row["id"], REV_FIELD: row["value"]["rev"], "_deleted": True}
            for row in rows
            if not is_system_id(row["id"])
        ]
        if not deletions:
            return 0
        results = await self.db.bulk_docs(deletions)
        for res in results:
            if res.get("error"):
                logger.warning(f"Could not delete {res.get('id')}: {res.get('reason') or res.get('error')}")
        return len(deletions)

    async def delete_all_local(self) -> int:
        """Delete every local document. Disconnects sync first so nothing propagates."""
        self.disconnect_remote()
        return await self._delete_all_records()

    async def delete_all_and_sync(self) -> int:
        """Delete every document and wait until the deletions reached the remote."""
        return await self.coordinator.delete_and_wait(self._delete_all_records)

    # ---- sync ----

    async def connect_remote(self, options: Union[RemoteOptions, Dict[str, Any], str]) -> None:
        if isinstance(options, str):
            options = RemoteOptions(url=options)
        elif isinstance(options, dict):
            options = RemoteOptions(**options)
        await self.coordinator.connect_remote(options.url, live=options.live, retry=options.retry)

    def disconnect_remote(self) -> None:
        self.coordinator.disconnect_remote()

    async def sync_now(self) -> None:
        await self.coordinator.sync_now()

    @property
    def sync_state(self) -> SyncState:
        return self.coordinator.state

    # ---- conflicts ----

    async def resolve_conflict(self, table: str, doc_id: str, winning_doc: Doc) -> Doc:
        return await self.resolver.resolve_conflict(table, doc_id, winning_doc, self.put)

    async def get_conflict_info(self, table: str, doc_id: str) -> Optional[ConflictInfo]:
        return await self.resolver.get_conflict_info(table, doc_id)

