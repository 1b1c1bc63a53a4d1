"""Exceptions raised by the encrypted document layer."""

from __future__ import annotations


class EncryptedStoreError(Exception):
    """Base exception for encrypted store errors."""

    pass


class DecryptionError(EncryptedStoreError):
    """Ciphertext could not be decrypted (wrong key, malformed or tampered input)."""

    pass


class RevisionConflictError(EncryptedStoreError):
    """A write carried a stale revision token."""

    def __init__(self, message: str, *, table: str | None = None, doc_id: str | None = None) -> None:
        self.table = table
        self.doc_id = doc_id
        super().__init__(message)


class ConflictNotFoundError(EncryptedStoreError):
    """The document has no conflicting revisions to resolve."""

    pass


class SyncNotConnectedError(EncryptedStoreError):
    """A sync operation needs connect_remote() first."""

    pass


class SyncTimeoutError(EncryptedStoreError, TimeoutError):
    """Deletions were not pushed to the remote in time."""

    pass


class InvalidIdentifierError(EncryptedStoreError, ValueError):
    """Table name or full identifier cannot be encoded/decoded unambiguously."""

    pass
