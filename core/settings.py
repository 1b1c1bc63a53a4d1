# core/settings.py
from __future__ import annotations

import os
from typing import Callable, TypeVar

T = TypeVar("T")

_TRUE = {"1", "true", "yes", "y", "on"}
_FALSE = {"0", "false", "no", "n", "off"}


def _env_raw(name: str) -> str:
    return (os.getenv(name) or "").strip()


def _env_bool(name: str, default: bool) -> bool:
    flag = _env_raw(name).lower()
    if flag in _TRUE:
        return True
    if flag in _FALSE:
        return False
    return default


def _env_number(name: str, default: T, cast: Callable[[str], T]) -> T:
    # Empty or unparsable values keep the default.
    raw = _env_raw(name)
    try:
        return cast(raw) if raw else default
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    return _env_number(name, default, int)


def _env_float(name: str, default: float) -> float:
    return _env_number(name, default, float)


def _env_choice(name: str, default: str, choices: set[str]) -> str:
    picked = _env_raw(name).lower()
    return picked if picked in choices else default


# -------------------------
# Encryption
# "derive" = PBKDF2 for human passphrases, "raw" = SHA-256 of pre-derived key material.
# -------------------------
DEFAULT_PASSPHRASE_MODE: str = _env_choice("STORE_PASSPHRASE_MODE", "derive", {"derive", "raw"})

# Bulk load policy. Off = log and keep going (the live subscription still starts).
LOAD_ALL_STRICT: bool = _env_bool("STORE_LOAD_ALL_STRICT", False)

# -------------------------
# Sync
# -------------------------
# connect_remote() waits this long for the first "active" signal, then returns anyway.
SYNC_CONNECT_TIMEOUT_S: float = _env_float("SYNC_CONNECT_TIMEOUT_S", 5.0)
# delete_all_and_sync() fails if the deletions are not pushed within this window.
DELETE_SYNC_TIMEOUT_S: float = _env_float("DELETE_SYNC_TIMEOUT_S", 30.0)

# Reference store replication
SYNC_POLL_INTERVAL_S: float = _env_float("SYNC_POLL_INTERVAL_S", 0.25)
SYNC_RETRY_BACKOFF_S: float = _env_float("SYNC_RETRY_BACKOFF_S", 0.5)
SYNC_RETRY_MAX_BACKOFF_S: float = _env_float("SYNC_RETRY_MAX_BACKOFF_S", 8.0)
SYNC_BATCH_SIZE: int = _env_int("SYNC_BATCH_SIZE", 500)

# -------------------------
# Reference store (SQLite)
# -------------------------
SQLITE_TIMEOUT_S: float = _env_float("SQLITE_TIMEOUT_S", 5.0)
SQLITE_JOURNAL_MODE: str = (_env_raw("STORE_SQLITE_JOURNAL_MODE") or "WAL").upper()
SQLITE_SYNCHRONOUS: str = (_env_raw("STORE_SQLITE_SYNCHRONOUS") or "NORMAL").upper()
