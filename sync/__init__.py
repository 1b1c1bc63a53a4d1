from .client import EncryptedStore
from .coordinator import SyncState
from .crypto import CipherEngine
from .errors import (
    ConflictNotFoundError,
    DecryptionError,
    EncryptedStoreError,
    InvalidIdentifierError,
    RevisionConflictError,
    SyncNotConnectedError,
    SyncTimeoutError,
)
from .listener import StoreListener
from .models import ConflictInfo, DecryptionErrorEvent, RemoteOptions, StoreOptions, SyncInfo, SyncStats, TableBatch

__all__ = [
    "EncryptedStore",
    "CipherEngine",
    "StoreListener",
    "StoreOptions",
    "RemoteOptions",
    "TableBatch",
    "ConflictInfo",
    "DecryptionErrorEvent",
    "SyncInfo",
    "SyncStats",
    "SyncState",
    "EncryptedStoreError",
    "DecryptionError",
    "RevisionConflictError",
    "ConflictNotFoundError",
    "SyncNotConnectedError",
    "SyncTimeoutError",
    "InvalidIdentifierError",
]
