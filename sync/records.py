"""Mapping between plain documents and encrypted store records.

A record keeps every ``_``-prefixed field in cleartext at the top level
(``_id`` holds the full identifier ``<table>_<id>``) and all other fields
JSON-encoded inside the ciphertext field ``d``.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional, Tuple

from .crypto import CipherEngine
from .errors import DecryptionError, InvalidIdentifierError
from .models import Doc

ID_SEPARATOR = "_"
METADATA_PREFIX = "_"
ID_FIELD = "_id"
REV_FIELD = "_rev"
PAYLOAD_FIELD = "d"
SYSTEM_ID_PREFIXES = ("_design/", "_local/")

# Set by the store on read; not part of the document.
_STORE_MANAGED_FIELDS = {"_conflicts", "_deleted", "_revisions", "_revs_info"}


def encode_id(table: str, doc_id: str) -> str:
    """Build the full identifier. Table names must not contain the separator."""
    if not table:
        raise InvalidIdentifierError("table name must not be empty")
    if ID_SEPARATOR in table:
        raise InvalidIdentifierError(f"table name {table!r} must not contain {ID_SEPARATOR!r}")
    return f"{table}{ID_SEPARATOR}{doc_id}"


def decode_id(full_id: str) -> Optional[Tuple[str, str]]:
    """Split on the first separator; None if there is none."""
    table, sep, doc_id = str(full_id).partition(ID_SEPARATOR)
    if not sep:
        return None
    return table, doc_id


def is_system_id(full_id: str) -> bool:
    return str(full_id).startswith(SYSTEM_ID_PREFIXES)


def partition(doc: Doc, full_id: str) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Split into (cleartext metadata, user data).

    ``_rev`` is left out; the write path sets it.
    """
    metadata: Dict[str, Any] = {}
    user_data: Dict[str, Any] = {}
    for key, value in doc.items():
        if key in (ID_FIELD, REV_FIELD):
            continue
        if key.startswith(METADATA_PREFIX):
            metadata[key] = value
        else:
            user_data[key] = value
    metadata[ID_FIELD] = full_id
    return metadata, user_data


def reassemble(metadata: Dict[str, Any], user_data: Dict[str, Any], doc_id: str) -> Doc:
    doc: Doc = {ID_FIELD: doc_id}
    rev = metadata.get(REV_FIELD)
    if rev is not None:
        doc[REV_FIELD] = rev
    for key, value in metadata.items():
        if key in (ID_FIELD, REV_FIELD) or key in _STORE_MANAGED_FIELDS:
            continue
        doc[key] = value
    doc.update(user_data)
    return doc


class RecordCodec:
    def __init__(self, cipher: CipherEngine) -> None:
        self.cipher = cipher

    async def encrypt_doc(self, doc: Doc, full_id: str) -> Dict[str, Any]:
        metadata, user_data = partition(doc, full_id)
        plaintext = json.dumps(user_data, ensure_ascii=False, separators=(",", ":"))
        metadata[PAYLOAD_FIELD] = await self.cipher.encrypt(plaintext)
        return metadata

    async def decrypt_record(self, record: Dict[str, Any]) -> Doc:
        full_id = str(record.get(ID_FIELD) or "")
        parsed = decode_id(full_id)
        if parsed is None:
            raise InvalidIdentifierError(f"Invalid ID format: {full_id}")

        plaintext = await self.cipher.decrypt(record.get(PAYLOAD_FIELD))  # type: ignore[arg-type]
        try:
            user_data = json.loads(plaintext)
        except ValueError as e:
            raise DecryptionError(f"Could not decode payload of {full_id}: {e}") from e
        if not isinstance(user_data, dict):
            raise DecryptionError(f"Payload of {full_id} is not an object")

        metadata = {k: v for k, v in record.items() if k.startswith(METADATA_PREFIX)}
        return reassemble(metadata, user_data, parsed[1])
