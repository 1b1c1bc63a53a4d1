from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from storage.base import DocStore, is_not_found

from .errors import ConflictNotFoundError, InvalidIdentifierError
from .listener import Notifier
from .models import ConflictInfo, DecryptionErrorEvent, Doc
from .records import ID_FIELD, REV_FIELD, RecordCodec, decode_id, encode_id

logger = logging.getLogger(__name__)

WriteFn = Callable[[str, Doc], Awaitable[Doc]]


class ConflictResolver:
    def __init__(self, db: DocStore, codec: RecordCodec, notifier: Notifier) -> None:
        self.db = db
        self.codec = codec
        self.notifier = notifier

    async def build_conflict_info(
        self,
        full_id: str,
        current_rev: str,
        conflict_revs: List[str],
        winner: Doc,
        *,
        errors: Optional[List[DecryptionErrorEvent]] = None,
    ) -> ConflictInfo:
        """Fetch and decrypt every competing revision.

        Revisions that cannot be fetched or decrypted are reported as errors and
        left out of ``losers``; they never abort the build. With ``errors``
        given, failures are appended there for the caller to report, otherwise
        they go straight to the error listener.
        """
        parsed = decode_id(full_id)
        if parsed is None:
            raise InvalidIdentifierError(f"Invalid ID format: {full_id}")

        losers: List[Doc] = []
        failed: List[DecryptionErrorEvent] = []
        for rev in conflict_revs:
            try:
                record = await self.db.get(full_id, rev=rev)
                losers.append(await self.codec.decrypt_record(record))
            except Exception as e:
                failed.append(
                    DecryptionErrorEvent(
                        doc_id=f"{full_id}@{rev}",
                        error=e,
                        raw_doc={ID_FIELD: full_id, REV_FIELD: rev},
                    )
                )

        if errors is not None:
            errors.extend(failed)
        else:
            self.notifier.error(failed)

        return ConflictInfo(
            doc_id=full_id,
            table=parsed[0],
            id=parsed[1],
            current_rev=current_rev,
            conflict_revs=list(conflict_revs),
            winner=winner,
            losers=losers,
        )

    async def _get_conflicted(self, full_id: str) -> Optional[Dict[str, Any]]:
        try:
            record = await self.db.get(full_id, conflicts=True)
        except Exception as e:
            if is_not_found(e):
                return None
            raise
        if not record.get("_conflicts"):
            return None
        return record

    async def get_conflict_info(self, table: str, doc_id: str) -> Optional[ConflictInfo]:
        """Conflict details without firing on_conflict.

        None if nothing is in conflict or the current version cannot be
        decrypted; the latter is reported through on_error.
        """
        full_id = encode_id(table, doc_id)
        record = await self._get_conflicted(full_id)
        if record is None:
            return None
        try:
            winner = await self.codec.decrypt_record(record)
        except Exception as e:
            self.notifier.error([DecryptionErrorEvent(doc_id=full_id, error=e, raw_doc=record)])
            return None
        return await self.build_conflict_info(full_id, record[REV_FIELD], record["_conflicts"], winner)

    async def resolve_conflict(self, table: str, doc_id: str, winning_doc: Doc, write: WriteFn) -> Doc:
        """Store ``winning_doc`` as the current version and drop the competing revisions.

        The winner is written on top of the current winning revision so it
        becomes the canonical leaf whichever version the caller picked.
        Removing a competing revision is best-effort: failures are logged and
        the remaining revisions are still removed.
        """
        full_id = encode_id(table, doc_id)
        record = await self._get_conflicted(full_id)
        if record is None:
            raise ConflictNotFoundError(f"No conflicts found for {full_id}")

        doc = dict(winning_doc)
        doc[ID_FIELD] = doc_id
        doc[REV_FIELD] = record[REV_FIELD]
        saved = await write(table, doc)

        for rev in record["_conflicts"]:
            try:
                await self.db.remove(full_id, rev)
            except Exception as e:
                logger.warning(f"Failed to remove conflict {full_id}@{rev}: {type(e).__name__}: {e}")
        return saved
