"""
Key derivation and session management.

Derives the user's symmetric key from a multi-part passphrase and keeps it
only as an in-memory ``KeyHandle``. The persisted ``KeyDerivationConfig``
holds the salt, the derivation parameters and a sealed verifier value.

Verification is timing-hardened:

- the failed attempt counter is read and updated under one asyncio.Lock,
  so concurrent attempts cannot race past the lockout threshold
- every path (success, wrong passphrase, lockout) is padded to the larger
  of ``min_verify_ms`` and the last observed key derivation time
- a locked-out session returns without deriving anything

Changing the passphrase of a configured store needs an unlocked session:
sealed cards are re-encrypted under the new key in the same commit that
replaces the config. ``clear_session`` bumps a session epoch, so a verify
or set still deriving when the session is cleared never installs its key.
"""

import asyncio
import secrets
import time
import uuid
from enum import Enum

from loguru import logger
from pydantic import BaseModel

from cardstore.config import KeySettings, settings
from cardstore.errors import (
    CardStoreError,
    EntropyError,
    ErrorKind,
    LockoutError,
    StorageError,
    ValidationError,
)
from cardstore.keys.entropy import combine_phrases, estimate_entropy, validate_phrase_structure
from cardstore.keys.provider import AesGcmProvider, CryptoProvider, DecryptionError, KeyHandle
from cardstore.store.base import RecordStore
from cardstore.types import KeyDerivationConfig, LockoutState

CONFIG_SETTING_KEY = "user_key_config"
VERIFIER_PLAINTEXT = b"cardstore-key-verifier-v1"


class SessionState(str, Enum):
    UNCONFIGURED = "unconfigured"
    LOCKED = "locked"
    UNLOCKED = "unlocked"
    LOCKED_OUT = "locked_out"


class PassphraseResult(BaseModel):
    """Outcome of setting or verifying a passphrase."""
    success: bool
    key_id: str | None = None
    entropy_bits: float | None = None
    remaining_attempts: int | None = None
    reason: ErrorKind | None = None
    message: str | None = None


class KeyManager:
    """
    Owns one key session: the persisted derivation config, the in-memory
    key handle and the lockout counter.

    Args:
        store: Record store holding the derivation config setting
        crypto: Crypto provider (defaults to AES-GCM / PBKDF2)
        key_settings: Overrides ``settings.keys``
        lockout: Shared lockout state, if the caller wants to own it
    """

    def __init__(
        self,
        store: RecordStore,
        crypto: CryptoProvider | None = None,
        key_settings: KeySettings | None = None,
        lockout: LockoutState | None = None,
    ):
        self.store = store
        self.key_settings = key_settings or settings.keys
        self.crypto = crypto or AesGcmProvider(self.key_settings.key_length)
        self.lockout = lockout or LockoutState(max_attempts=self.key_settings.max_attempts)
        self._handle: KeyHandle | None = None
        self._config: KeyDerivationConfig | None = None
        self._lock = asyncio.Lock()
        self._epoch = 0
        self._derive_seconds = 0.0

    @property
    def key_handle(self) -> KeyHandle | None:
        return self._handle

    async def _load_config(self) -> KeyDerivationConfig | None:
        if self._config is None:
            raw = await self.store.get_setting(CONFIG_SETTING_KEY)
            if raw:
                self._config = KeyDerivationConfig.from_dict(raw)
        return self._config

    async def state(self) -> SessionState:
        if self.lockout.locked_out:
            return SessionState.LOCKED_OUT
        if self._handle is not None:
            return SessionState.UNLOCKED
        if await self._load_config() is not None:
            return SessionState.LOCKED
        return SessionState.UNCONFIGURED

    async def status(self) -> dict:
        state = await self.state()
        return {
            "state": state.value,
            "key_id": self._config.key_id if self._config else None,
            "failed_attempts": self.lockout.failed_attempts,
            "max_attempts": self.lockout.max_attempts,
        }

    def _failure(self, error: CardStoreError) -> PassphraseResult:
        return PassphraseResult(
            success=False,
            reason=error.kind,
            message=error.message,
            remaining_attempts=self.lockout.remaining_attempts,
        )

    def _check_lockout(self) -> None:
        if self.lockout.locked_out:
            raise LockoutError("Too many failed attempts; the session is locked out")

    # ------------------------------------------------------------------
    # Set
    # ------------------------------------------------------------------

    async def _derive(self, combined: str, salt: bytes, iterations: int) -> KeyHandle:
        started = time.perf_counter()
        handle = await self.crypto.derive_key(combined.encode("utf-8"), salt, iterations)
        self._derive_seconds = time.perf_counter() - started
        return handle

    async def set_passphrase(self, parts) -> PassphraseResult:
        """
        Create a new key from ``parts`` and unlock the session with it.

        On a store that already has a key the session must be unlocked; every
        sealed card is re-encrypted under the new key.
        """
        epoch = self._epoch
        try:
            phrases = validate_phrase_structure(parts, self.key_settings.phrase_count)
            combined = combine_phrases(phrases)
            entropy_bits = round(estimate_entropy(combined), 2)
            if entropy_bits < self.key_settings.min_entropy_bits:
                raise EntropyError(
                    f"Passphrase too weak: {entropy_bits:.1f} bits, need {self.key_settings.min_entropy_bits:.0f}",
                    entropy_bits=entropy_bits,
                    required_bits=self.key_settings.min_entropy_bits,
                )

            async with self._lock:
                self._check_lockout()
                previous = await self._load_config()
                current = self._handle
                if previous is not None and current is None:
                    raise ValidationError(
                        "Unlock the session before changing the passphrase", field="passphrase"
                    )

                salt = self.crypto.random_bytes(self.key_settings.salt_length)
                handle = await self._derive(combined, salt, self.key_settings.iterations)
                handle.key_id = f"key_{uuid.uuid4().hex}"
                verifier = self.crypto.encrypt(handle, VERIFIER_PLAINTEXT)

                config = KeyDerivationConfig(
                    key_id=handle.key_id,
                    salt=salt,
                    iterations=self.key_settings.iterations,
                    entropy_bits=entropy_bits,
                    algorithm=self.key_settings.algorithm,
                    verifier_ciphertext=verifier.ciphertext,
                    verifier_iv=verifier.iv,
                )
                if previous is None:
                    await self.store.put_setting(CONFIG_SETTING_KEY, config.to_dict())
                else:
                    await self.store.reseal(current, handle, CONFIG_SETTING_KEY, config.to_dict())

                self._config = config
                self.lockout.failed_attempts = 0
                if self._epoch == epoch:
                    self._handle = handle
                else:
                    self._handle = None
                    logger.info("Session cleared while the new key was derived; staying locked")

        except EntropyError as e:
            logger.info(f"Rejected weak passphrase ({e.entropy_bits:.1f} bits)")
            result = self._failure(e)
            result.entropy_bits = e.entropy_bits
            return result
        except StorageError as e:
            logger.error(f"Could not persist key config: {e.message}")
            return self._failure(e)
        except CardStoreError as e:
            return self._failure(e)

        if previous is not None:
            logger.info(f"Passphrase changed, key {previous.key_id} replaced by {config.key_id}")
        else:
            logger.info(f"Passphrase set, key {config.key_id} ({entropy_bits:.1f} bits)")
        return PassphraseResult(success=True, key_id=config.key_id, entropy_bits=entropy_bits)

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify_passphrase(self, parts) -> PassphraseResult:
        """Re-derive the key from ``parts`` and unlock the session if it matches."""
        started = time.perf_counter()
        epoch = self._epoch
        try:
            return await self._verify(parts, epoch)
        finally:
            floor = max(self.key_settings.min_verify_ms / 1000, self._derive_seconds)
            remaining = floor - (time.perf_counter() - started)
            if remaining > 0:
                await asyncio.sleep(remaining)

    async def _verify(self, parts, epoch: int) -> PassphraseResult:
        async with self._lock:
            try:
                self._check_lockout()
                phrases = validate_phrase_structure(parts, self.key_settings.phrase_count)
                config = await self._load_config()
            except LockoutError as e:
                logger.warning("Verification refused: session locked out")
                result = self._failure(e)
                result.remaining_attempts = 0
                return result
            except CardStoreError as e:
                return self._failure(e)

            if config is None:
                return PassphraseResult(
                    success=False,
                    reason=ErrorKind.NOT_CONFIGURED,
                    message="No passphrase has been set",
                    remaining_attempts=self.lockout.remaining_attempts,
                )

            handle = await self._derive(combine_phrases(phrases), config.salt, config.iterations)
            handle.key_id = config.key_id

            if self._matches_verifier(handle, config):
                self.lockout.failed_attempts = 0
                if self._epoch != epoch:
                    logger.info("Session cleared during verification; staying locked")
                    return PassphraseResult(
                        success=False,
                        reason=ErrorKind.SESSION_CLEARED,
                        message="Session was cleared during verification",
                        remaining_attempts=self.lockout.remaining_attempts,
                    )
                self._handle = handle
                logger.info(f"Session unlocked with key {config.key_id}")
                return PassphraseResult(
                    success=True,
                    key_id=config.key_id,
                    entropy_bits=config.entropy_bits,
                    remaining_attempts=self.lockout.remaining_attempts,
                )

            self.lockout.failed_attempts += 1
            if self.lockout.locked_out:
                self._handle = None
                logger.warning(f"Session locked out after {self.lockout.failed_attempts} failed attempts")
            else:
                logger.info(f"Passphrase mismatch, {self.lockout.remaining_attempts} attempts left")

            return PassphraseResult(
                success=False,
                reason=ErrorKind.VERIFICATION_FAILED,
                message="Passphrase does not match",
                remaining_attempts=self.lockout.remaining_attempts,
            )

    def _matches_verifier(self, handle: KeyHandle, config: KeyDerivationConfig) -> bool:
        try:
            plaintext = self.crypto.decrypt(handle, config.verifier_ciphertext, config.verifier_iv)
        except DecryptionError:
            return False
        return secrets.compare_digest(plaintext, VERIFIER_PLAINTEXT)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def clear_session(self) -> None:
        """Drop the in-memory key. Safe to call at any time, even mid-verify."""
        self._epoch += 1
        if self._handle is not None:
            logger.info("Session locked")
        self._handle = None

    async def reset_lockout(self) -> None:
        """Administrative reset of the failed attempt counter."""
        async with self._lock:
            self.lockout.failed_attempts = 0
        logger.info("Lockout counter reset")
