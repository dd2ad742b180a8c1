"""Passphrase-derived keys and the crypto provider."""

from cardstore.keys.manager import KeyManager, PassphraseResult, SessionState
from cardstore.keys.provider import (
    AesGcmProvider,
    CryptoProvider,
    DecryptionError,
    EncryptedPayload,
    KeyHandle,
)

__all__ = [
    "KeyManager",
    "PassphraseResult",
    "SessionState",
    "AesGcmProvider",
    "CryptoProvider",
    "DecryptionError",
    "EncryptedPayload",
    "KeyHandle",
]
