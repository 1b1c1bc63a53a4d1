from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from storage.base import DocStore

from .conflicts import ConflictResolver
from .listener import Notifier
from .models import ConflictInfo, DecryptionErrorEvent, Doc, TableBatch
from .records import ID_FIELD, PAYLOAD_FIELD, REV_FIELD, RecordCodec, decode_id, is_system_id

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    batches: List[TableBatch] = field(default_factory=list)
    errors: List[DecryptionErrorEvent] = field(default_factory=list)
    conflicts: List[ConflictInfo] = field(default_factory=list)

    @property
    def docs(self) -> List[Doc]:
        return [d for b in self.batches for d in b.docs]


class ChangeTranslator:
    """Turns raw store rows and change events into decrypted listener notifications."""

    def __init__(self, db: DocStore, codec: RecordCodec, resolver: ConflictResolver, notifier: Notifier) -> None:
        self.db = db
        self.codec = codec
        self.resolver = resolver
        self.notifier = notifier

    async def scan(self, *, table: Optional[str] = None, with_conflicts: bool = False) -> ScanResult:
        """Decrypt every stored record, grouped by table.

        A record that fails to decrypt becomes an error entry; the scan goes on.
        """
        rows = await self.db.all_docs(include_docs=True, conflicts=True)
        result = ScanResult()
        by_table: Dict[str, List[Doc]] = {}

        for row in rows:
            full_id = str(row.get("id") or "")
            record = row.get("doc")
            if not record or is_system_id(full_id) or not record.get(PAYLOAD_FIELD):
                continue
            try:
                doc = await self.codec.decrypt_record(record)
            except Exception as e:
                result.errors.append(DecryptionErrorEvent(doc_id=full_id, error=e, raw_doc=record))
                continue

            doc_table = decode_id(full_id)[0]  # type: ignore[index]
            if table is None or doc_table == table:
                by_table.setdefault(doc_table, []).append(doc)

            conflict_revs = record.get("_conflicts") or []
            if with_conflicts and conflict_revs:
                info = await self.resolver.build_conflict_info(
                    full_id, record[REV_FIELD], conflict_revs, doc, errors=result.errors
                )
                result.conflicts.append(info)

        result.batches = [TableBatch(table=t, docs=docs) for t, docs in by_table.items()]
        return result

    async def load(self) -> ScanResult:
        """Bulk load: one change, one error and one conflict notification at most."""
        result = await self.scan(with_conflicts=True)
        logger.debug(
            f"loaded docs={len(result.docs)} tables={len(result.batches)} "
            f"errors={len(result.errors)} conflicts={len(result.conflicts)}"
        )
        self.notifier.change(result.batches)
        self.notifier.error(result.errors)
        self.notifier.conflict(result.conflicts)
        return result

    async def handle_change(self, change: Dict[str, Any]) -> None:
        """Translate one live change event into delete/change/error/conflict notifications."""
        full_id = str(change.get("id") or "")
        if is_system_id(full_id):
            return

        record = change.get("doc") or {}
        if change.get("deleted") or not record.get(PAYLOAD_FIELD):
            parsed = decode_id(full_id)
            if parsed is not None:
                self.notifier.delete([TableBatch(table=parsed[0], docs=[{ID_FIELD: parsed[1]}])])
            return

        try:
            doc = await self.codec.decrypt_record(record)
        except Exception as e:
            self.notifier.error([DecryptionErrorEvent(doc_id=full_id, error=e, raw_doc=record)])
            return

        table = decode_id(full_id)[0]  # type: ignore[index]
        self.notifier.change([TableBatch(table=table, docs=[doc])])

        conflict_revs = record.get("_conflicts") or []
        if conflict_revs:
            info = await self.resolver.build_conflict_info(full_id, record[REV_FIELD], conflict_revs, doc)
            self.notifier.conflict([info])
