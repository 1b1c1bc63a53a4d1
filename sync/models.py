from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal

from pydantic import BaseModel

from core.settings import (
    DEFAULT_PASSPHRASE_MODE,
    DELETE_SYNC_TIMEOUT_S,
    LOAD_ALL_STRICT,
    SYNC_CONNECT_TIMEOUT_S,
)

# Decrypted document: {"_id": <id within table>, "_rev": <revision>, **fields}
Doc = Dict[str, Any]


class StoreOptions(BaseModel):
    passphrase_mode: Literal["derive", "raw"] = DEFAULT_PASSPHRASE_MODE  # type: ignore[assignment]
    # Re-raise bulk load failures (after the live subscription has started).
    strict_load: bool = LOAD_ALL_STRICT
    connect_timeout_s: float = SYNC_CONNECT_TIMEOUT_S
    delete_sync_timeout_s: float = DELETE_SYNC_TIMEOUT_S


class RemoteOptions(BaseModel):
    url: str
    live: bool = True
    retry: bool = True


@dataclass
class TableBatch:
    """Documents of one table delivered in a single notification."""

    table: str
    docs: List[Doc]


@dataclass
class DecryptionErrorEvent:
    doc_id: str  # full identifier, "<full_id>@<rev>" for conflict revisions
    error: BaseException
    raw_doc: Dict[str, Any]


@dataclass
class ConflictInfo:
    """Winner and recoverable losers of a conflicted document.

    ``losers`` may be shorter than ``conflict_revs`` when some competing
    revisions failed to decrypt.
    """

    doc_id: str
    table: str
    id: str
    current_rev: str
    conflict_revs: List[str]
    winner: Doc
    losers: List[Doc] = field(default_factory=list)


@dataclass
class SyncStats:
    docs_read: int = 0
    docs_written: int = 0
    doc_write_failures: int = 0
    errors: List[Any] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> SyncStats:
        return cls(
            docs_read=int(data.get("docs_read") or 0),
            docs_written=int(data.get("docs_written") or 0),
            doc_write_failures=int(data.get("doc_write_failures") or 0),
            errors=list(data.get("errors") or []),
        )


@dataclass
class SyncInfo:
    direction: Literal["push", "pull", "both"]
    change: SyncStats
