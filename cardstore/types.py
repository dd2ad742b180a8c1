"""
Data models for the card record store.

Defines the card record and its structured fields, the persisted key
derivation parameters, and the transient values produced by duplicate
detection and batch migration.
"""

import base64
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from cardstore import bilingual
from cardstore.bilingual import BilingualText
from cardstore.errors import ErrorKind, MigrationItemError, ValidationError
from cardstore.utils.text import clean_string

# Fields holding bilingual text
BILINGUAL_FIELDS = ("name", "title", "department", "organization", "address", "social_note")

# Single-valued plain text fields
TEXT_FIELDS = ("email", "phone", "mobile")

# Fixed order used for canonicalization; never derived from input order
FIELD_ORDER = (
    "name",
    "title",
    "department",
    "organization",
    "email",
    "phone",
    "mobile",
    "address",
    "greetings",
    "social_note",
)

# Raw input keys accepted as aliases for field names
_ALIASES = {
    "socialNote": "social_note",
    "social": "social_note",
    "greeting": "greetings",
}


class MigrationStatus(str, Enum):
    """Fingerprint migration state of a record."""

    NONE = "none"
    PENDING = "pending"
    COMPLETED = "completed"


class DuplicateClassification(str, Enum):
    """How a candidate relates to the stored records."""

    EXACT = "exact"
    SIMILAR = "similar"
    NONE = "none"


class ResolutionAction(str, Enum):
    """What to do with a duplicate candidate."""

    REPLACE = "replace"
    MERGE = "merge"
    SKIP = "skip"
    NONE = "none"


# =============================================================================
# Card records
# =============================================================================

@dataclass
class CardFields:
    """Structured business card content."""

    name: BilingualText | None = None
    title: BilingualText | None = None
    department: BilingualText | None = None
    organization: BilingualText | None = None
    email: str | None = None
    phone: str | None = None
    mobile: str | None = None
    address: BilingualText | None = None
    greetings: list[str] = field(default_factory=list)
    social_note: BilingualText | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CardFields":
        """
        Build fields from raw input, accepting any bilingual shape.

        Raises ``ValidationError`` when the card is not a mapping or its
        greetings are neither text nor a list.
        """
        if isinstance(data, CardFields):
            return data
        if data is None:
            data = {}
        if not isinstance(data, Mapping):
            raise ValidationError(f"A card must be a mapping of fields, got {type(data).__name__}")
        kwargs: dict[str, Any] = {}

        for key, raw in data.items():
            name = _ALIASES.get(key, key)
            if name in BILINGUAL_FIELDS:
                kwargs[name] = bilingual.coerce(raw)
            elif name in TEXT_FIELDS:
                text = clean_string(raw)
                kwargs[name] = text or None
            elif name == "greetings":
                kwargs[name] = _coerce_greetings(raw)

        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to plain JSON-compatible values (empty fields omitted)."""
        out: dict[str, Any] = {}
        for name in FIELD_ORDER:
            value = getattr(self, name)
            if name in BILINGUAL_FIELDS:
                if value is not None:
                    out[name] = bilingual.to_raw(value)
            elif name == "greetings":
                if value:
                    out[name] = list(value)
            elif value:
                out[name] = value
        return out

    def supplies(self, name: str) -> bool:
        """True when this field carries a non-empty value."""
        value = getattr(self, name)
        if name in BILINGUAL_FIELDS:
            return not bilingual.is_empty(value)
        if name == "greetings":
            return any(clean_string(g) for g in value or [])
        return bool(clean_string(value))


def _coerce_greetings(raw) -> list[str]:
    if raw is None:
        return []
    if isinstance(raw, (str, Mapping, bilingual.Plain, bilingual.Bilingual)):
        raw = [raw]
    elif not isinstance(raw, Iterable):
        raise ValidationError(f"Greetings must be a list, got {type(raw).__name__}", field="greetings")
    greetings = []
    for item in raw:
        if isinstance(item, (dict, bilingual.Plain, bilingual.Bilingual)):
            primary, secondary = bilingual.canonical_pair(bilingual.coerce(item))
            text = primary if primary == secondary else f"{primary}{bilingual.SEPARATOR}{secondary}"
        else:
            text = clean_string(item)
        if text:
            greetings.append(text)
    return greetings


@dataclass
class CardRecord:
    """A stored business card."""

    id: str
    fields: CardFields
    fingerprint: str | None = None
    migration_status: MigrationStatus = MigrationStatus.NONE
    migration_version: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def __repr__(self) -> str:
        return f"<CardRecord {self.id} ({self.migration_status.value})>"


# =============================================================================
# Key derivation
# =============================================================================

@dataclass
class KeyDerivationConfig:
    """
    Persisted parameters for re-deriving the user's key.

    The derived key itself is never stored. ``verifier_ciphertext`` is a
    fixed value sealed with the key so a later derivation can be checked by
    decrypting it.
    """

    key_id: str
    salt: bytes
    iterations: int
    entropy_bits: float
    algorithm: str
    verifier_ciphertext: bytes = b""
    verifier_iv: bytes = b""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "key_id": self.key_id,
            "salt": base64.b64encode(self.salt).decode("ascii"),
            "iterations": self.iterations,
            "entropy_bits": self.entropy_bits,
            "algorithm": self.algorithm,
            "verifier_ciphertext": base64.b64encode(self.verifier_ciphertext).decode("ascii"),
            "verifier_iv": base64.b64encode(self.verifier_iv).decode("ascii"),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "KeyDerivationConfig":
        return cls(
            key_id=data["key_id"],
            salt=base64.b64decode(data["salt"]),
            iterations=int(data["iterations"]),
            entropy_bits=float(data["entropy_bits"]),
            algorithm=data["algorithm"],
            verifier_ciphertext=base64.b64decode(data.get("verifier_ciphertext", "")),
            verifier_iv=base64.b64decode(data.get("verifier_iv", "")),
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.now(timezone.utc),
        )


@dataclass
class LockoutState:
    """Failed verification counter owned by one key session."""

    max_attempts: int = 3
    failed_attempts: int = 0

    @property
    def locked_out(self) -> bool:
        return self.failed_attempts >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        return max(0, self.max_attempts - self.failed_attempts)


# =============================================================================
# Duplicate detection
# =============================================================================

@dataclass
class DuplicateResolution:
    """Outcome of comparing one candidate against stored records."""

    classification: DuplicateClassification
    similarity: float
    action: ResolutionAction
    existing_id: str | None = None
    fingerprint: str | None = None
    field_scores: dict[str, float] = field(default_factory=dict)

    @property
    def is_duplicate(self) -> bool:
        return self.classification != DuplicateClassification.NONE


@dataclass
class DuplicateStats:
    total_cards: int = 0
    unique_fingerprints: int = 0
    duplicate_groups: int = 0
    total_duplicates: int = 0
    duplicate_rate: int = 0  # percent


# =============================================================================
# Migration
# =============================================================================

@dataclass
class MigrationBatch:
    """One slice of records being migrated."""

    index: int
    items: list[CardRecord]
    errors: list[MigrationItemError] = field(default_factory=list)


@dataclass
class BatchError:
    """Aggregated permanent failures of one batch."""

    batch: int  # 1-based batch number
    message: str
    item_ids: list[str] = field(default_factory=list)
    item_errors: list[MigrationItemError] = field(default_factory=list)


@dataclass
class MigrationProgress:
    processed_count: int
    total_count: int
    percentage: int
    batch: int


@dataclass
class MigrationResult:
    success: bool
    total_count: int
    processed_count: int = 0
    error_count: int = 0
    errors: list[BatchError] = field(default_factory=list)
    duration_seconds: float | None = None
    cancelled: bool = False
    reason: ErrorKind | None = None


@dataclass
class RecoveryResult:
    recovered_count: int = 0
    permanent_failures: list[MigrationItemError] = field(default_factory=list)


@dataclass
class ValidationReport:
    """Fingerprint coverage across the store."""

    is_valid: bool = True
    total_cards: int = 0
    with_fingerprints: int = 0
    without_fingerprints: int = 0
    invalid_fingerprints: int = 0
    issues: list[str] = field(default_factory=list)


@dataclass
class ProcessingEstimate:
    card_count: int
    batch_count: int
    estimated_seconds: int
    estimated_minutes: int
