from __future__ import annotations

import asyncio
import os
from hashlib import sha256
from typing import Literal, Optional

from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import DecryptionError

PassphraseMode = Literal["derive", "raw"]
PASSPHRASE_MODES = ("derive", "raw")

KDF_ITERATIONS = 100_000
KEY_SIZE = 32  # 256 bits
NONCE_SIZE = 12  # 96 bits for GCM
CIPHERTEXT_SEPARATOR = "|"


def derive_key(passphrase: str, mode: str = "derive") -> bytes:
    """Turn a passphrase into a 256-bit AES key.

    ``derive``: PBKDF2-HMAC-SHA256, 100k iterations. The passphrase bytes are
    reused as the salt, so every installation derives the same key from the
    same passphrase.

    SECURITY CAVEAT: with a fixed, passphrase-derived salt there is no
    per-installation salt diversity. A dictionary precomputed against this
    scheme works against every installation. Do not add a random salt here:
    callers rely on passphrase -> key determinism to read each other's data.

    ``raw``: a single SHA-256 of the passphrase bytes, for key material that
    is already high-entropy.
    """
    pw = passphrase.encode("utf-8")
    if mode == "derive":
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_SIZE,
            salt=pw,
            iterations=KDF_ITERATIONS,
        )
        return kdf.derive(pw)
    if mode == "raw":
        return sha256(pw).digest()
    raise ValueError(f"unknown passphrase mode: {mode!r}")


def _describe(e: BaseException) -> str:
    msg = str(e).strip()
    return f"{type(e).__name__}: {msg}" if msg else type(e).__name__


class CipherEngine:
    """AES-256-GCM over strings, keyed by a passphrase.

    The key is derived lazily on first use and cached for the lifetime of the
    instance. Concurrent first callers share one in-flight derivation.
    """

    def __init__(self, passphrase: str, passphrase_mode: str = "derive") -> None:
        if passphrase_mode not in PASSPHRASE_MODES:
            raise ValueError(f"passphrase_mode must be one of {PASSPHRASE_MODES}, got {passphrase_mode!r}")
        self._passphrase = passphrase
        self.passphrase_mode = passphrase_mode
        self._key_task: Optional[asyncio.Future[AESGCM]] = None
        self._aead: Optional[AESGCM] = None

    def _derive_key_sync(self) -> bytes:
        return derive_key(self._passphrase, self.passphrase_mode)

    async def _derive(self) -> AESGCM:
        key = await asyncio.to_thread(self._derive_key_sync)
        self._aead = AESGCM(key)
        return self._aead

    async def _get_cipher(self) -> AESGCM:
        if self._aead is not None:
            return self._aead
        if self._key_task is None:
            self._key_task = asyncio.ensure_future(self._derive())
        # shield: one caller being cancelled must not cancel the shared derivation
        return await asyncio.shield(self._key_task)

    async def encrypt(self, plaintext: str) -> str:
        aead = await self._get_cipher()
        nonce = os.urandom(NONCE_SIZE)
        ct = aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return f"{nonce.hex()}{CIPHERTEXT_SEPARATOR}{ct.hex()}"

    async def decrypt(self, data: str) -> str:
        try:
            aead = await self._get_cipher()
            nonce_hex, sep, ct_hex = data.partition(CIPHERTEXT_SEPARATOR)
            if not sep:
                raise ValueError("missing nonce separator")
            nonce = bytes.fromhex(nonce_hex)
            ct = bytes.fromhex(ct_hex)
            return aead.decrypt(nonce, ct, None).decode("utf-8")
        except DecryptionError:
            raise
        except Exception as e:
            raise DecryptionError(f"Could not decrypt: {_describe(e)}") from e
