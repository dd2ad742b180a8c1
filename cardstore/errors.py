"""
Error taxonomy for the card store.

Errors are raised inside the core (store boundary, crypto provider,
fingerprint format checks) and turned into result values by every public
operation. ``ErrorKind`` is the reason code callers see on those results.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Reason codes carried on failed results."""

    VALIDATION = "validation"
    ENTROPY = "entropy"
    LOCKOUT = "lockout"
    STORAGE = "storage"
    INTEGRITY = "integrity"
    MIGRATION_ITEM = "migration_item"
    NOT_CONFIGURED = "not_configured"
    VERIFICATION_FAILED = "verification_failed"
    SESSION_CLEARED = "session_cleared"


class CardStoreError(Exception):
    """Base class for all card store errors."""

    kind: ErrorKind = ErrorKind.STORAGE

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(CardStoreError):
    """Malformed passphrase shape or missing required card fields."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class EntropyError(CardStoreError):
    """Passphrase is structurally valid but too weak."""

    kind = ErrorKind.ENTROPY

    def __init__(self, message: str, entropy_bits: float, required_bits: float):
        super().__init__(message)
        self.entropy_bits = entropy_bits
        self.required_bits = required_bits


class LockoutError(CardStoreError):
    """Too many failed verifications; only an external reset clears it."""

    kind = ErrorKind.LOCKOUT


class StorageError(CardStoreError):
    """Transient record-store failure. Callers may retry."""

    kind = ErrorKind.STORAGE

    def __init__(self, message: str, record_id: str | None = None, original_error: Exception | None = None):
        super().__init__(message)
        self.record_id = record_id
        self.original_error = original_error


class IntegrityError(CardStoreError):
    """A fingerprint token failed its format check; the record needs re-fingerprinting."""

    kind = ErrorKind.INTEGRITY

    def __init__(self, message: str, token: str | None = None):
        super().__init__(message)
        self.token = token


class MigrationItemError(CardStoreError):
    """A single record failed migration after all retries."""

    kind = ErrorKind.MIGRATION_ITEM

    def __init__(self, message: str, item_id: str, attempts: int = 0):
        super().__init__(message)
        self.item_id = item_id
        self.attempts = attempts

    def __str__(self):
        return f"[{self.item_id}] {self.message}"
