"""
Cryptographic provider.

Wraps the platform primitives the key manager and the encrypted store need:

- secure random bytes
- password-based key derivation (PBKDF2-HMAC-SHA256)
- authenticated encryption (AES-GCM, 96-bit nonces)

Key material only ever lives inside a ``KeyHandle``.
"""

import asyncio
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from cardstore.config import settings

NONCE_LENGTH = 12


class DecryptionError(Exception):
    """Ciphertext failed authentication (wrong key or tampered data)."""


@dataclass(frozen=True)
class EncryptedPayload:
    ciphertext: bytes
    iv: bytes


class KeyHandle:
    """Opaque in-memory reference to a derived key."""

    __slots__ = ("_aead", "key_id")

    def __init__(self, key: bytes, key_id: str | None = None):
        self._aead = AESGCM(key)
        self.key_id = key_id

    def __repr__(self) -> str:
        return f"<KeyHandle {self.key_id or 'unbound'}>"


class CryptoProvider(ABC):
    """Abstract source of randomness, key derivation and AEAD."""

    @abstractmethod
    def random_bytes(self, n: int) -> bytes:
        pass

    @abstractmethod
    async def derive_key(self, passphrase: bytes, salt: bytes, iterations: int) -> KeyHandle:
        pass

    @abstractmethod
    def encrypt(self, handle: KeyHandle, plaintext: bytes) -> EncryptedPayload:
        pass

    @abstractmethod
    def decrypt(self, handle: KeyHandle, ciphertext: bytes, iv: bytes) -> bytes:
        """Raise ``DecryptionError`` when authentication fails."""


class AesGcmProvider(CryptoProvider):
    """Default provider backed by the ``cryptography`` package."""

    def __init__(self, key_length: int | None = None):
        self.key_length = key_length or settings.keys.key_length

    def random_bytes(self, n: int) -> bytes:
        return os.urandom(n)

    def _derive(self, passphrase: bytes, salt: bytes, iterations: int) -> bytes:
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=self.key_length,
            salt=salt,
            iterations=iterations,
        )
        return kdf.derive(passphrase)

    async def derive_key(self, passphrase: bytes, salt: bytes, iterations: int) -> KeyHandle:
        # PBKDF2 is CPU bound; keep it off the event loop
        key = await asyncio.to_thread(self._derive, passphrase, salt, iterations)
        return KeyHandle(key)

    def encrypt(self, handle: KeyHandle, plaintext: bytes) -> EncryptedPayload:
        iv = self.random_bytes(NONCE_LENGTH)
        return EncryptedPayload(ciphertext=handle._aead.encrypt(iv, plaintext, None), iv=iv)

    def decrypt(self, handle: KeyHandle, ciphertext: bytes, iv: bytes) -> bytes:
        try:
            return handle._aead.decrypt(iv, ciphertext, None)
        except (InvalidTag, ValueError) as e:
            raise DecryptionError("Authentication failed") from e
