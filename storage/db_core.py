from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator

from core.settings import SQLITE_JOURNAL_MODE, SQLITE_SYNCHRONOUS, SQLITE_TIMEOUT_S

SCHEMA = """
CREATE TABLE IF NOT EXISTS doc_revs (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    doc_id TEXT NOT NULL,
    rev TEXT NOT NULL,
    parent_rev TEXT,
    deleted INTEGER NOT NULL DEFAULT 0,
    body_json TEXT NOT NULL,
    UNIQUE(doc_id, rev)
);
CREATE INDEX IF NOT EXISTS idx_doc_revs_doc ON doc_revs(doc_id);
"""


def resolve_db_path(url_or_path: str) -> Path:
    """Accept a plain filesystem path or a ``sqlite:///path`` URL."""
    raw = str(url_or_path or "").strip()
    if raw.startswith("sqlite:///"):
        raw = raw[len("sqlite:///"):]
    elif raw.startswith("file://"):
        raw = raw[len("file://"):]
    if not raw:
        raise ValueError("empty database path")
    return Path(raw).expanduser().resolve()


_SYNCHRONOUS_LEVELS = {"OFF", "NORMAL", "FULL", "EXTRA"}


def _pragmas() -> list[str]:
    out = [f"busy_timeout={int(SQLITE_TIMEOUT_S * 1000)}", f"journal_mode={SQLITE_JOURNAL_MODE}"]
    if SQLITE_SYNCHRONOUS in _SYNCHRONOUS_LEVELS:
        out.append(f"synchronous={SQLITE_SYNCHRONOUS}")
    return out


def connect(db_path: Path) -> sqlite3.Connection:
    """Open a connection to the revision store.

    journal_mode and synchronous come from settings (WAL / NORMAL unless
    overridden); busy_timeout follows SQLITE_TIMEOUT_S. A PRAGMA the
    environment refuses is skipped.
    """
    conn = sqlite3.connect(str(db_path), timeout=SQLITE_TIMEOUT_S)
    conn.row_factory = sqlite3.Row
    for pragma in _pragmas():
        try:
            conn.execute(f"PRAGMA {pragma};")
        except sqlite3.OperationalError:
            continue
    return conn


@contextmanager
def transaction(db_path: Path) -> Iterator[sqlite3.Connection]:
    """Read-write connection context with explicit BEGIN/COMMIT/ROLLBACK."""
    conn = connect(db_path)
    try:
        conn.execute("BEGIN IMMEDIATE;")
        yield conn
        conn.commit()
    except Exception:
        try:
            conn.rollback()
        except Exception:
            pass
        raise
    finally:
        conn.close()


def init_db(db_path: Path) -> None:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = connect(db_path)
    try:
        conn.executescript(SCHEMA)
        conn.commit()
    finally:
        conn.close()


def canonical_json(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, sort_keys=True, separators=(",", ":"))
