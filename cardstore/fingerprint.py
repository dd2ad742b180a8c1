"""
Content fingerprints for business cards.

A fingerprint is ``fingerprint_`` followed by the SHA-256 hex digest of the
card's canonical form. Every bilingual field is reduced to its canonical
``(primary, secondary)`` pair and fields are serialized in ``FIELD_ORDER``,
so a card yields the same token whether its name arrived as "A~B",
{"zh": "A", "en": "B"} or Bilingual("A", "B").
"""

import hashlib
import json
import re
from typing import Any

from cardstore import bilingual
from cardstore.errors import IntegrityError, ValidationError
from cardstore.types import BILINGUAL_FIELDS, FIELD_ORDER, CardFields, CardRecord
from cardstore.utils.text import clean_string

PREFIX = "fingerprint_"
ALGORITHM = "sha256"
TOKEN_LENGTH = len(PREFIX) + 64

_TOKEN_PATTERN = re.compile(r"^fingerprint_([a-f0-9]{64})$")


def canonicalize(fields: CardFields | dict[str, Any] | None) -> bytes:
    """Canonical UTF-8 byte form of a card's fields.

    Missing fields canonicalize to empty values. Raises ``ValidationError``
    for input that is not a mapping and for malformed greetings.
    """
    fields = CardFields.from_dict(fields)
    parts = []
    for name in FIELD_ORDER:
        value = getattr(fields, name)
        if name in BILINGUAL_FIELDS:
            parts.append([name, list(bilingual.canonical_pair(value))])
        elif name == "greetings":
            pairs = [bilingual.canonical_pair(bilingual.coerce(g)) for g in value or []]
            parts.append([name, [list(p) for p in pairs if p != ("", "")]])
        else:
            parts.append([name, clean_string(value)])
    return json.dumps(parts, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def fingerprint(fields: CardFields | dict[str, Any] | None) -> str:
    """Deterministic content token for a card."""
    digest = hashlib.new(ALGORITHM, canonicalize(fields)).hexdigest()
    return f"{PREFIX}{digest}"


def validate_fingerprint(token) -> bool:
    """True when ``token`` has the prefix and a 64-character hex digest."""
    return isinstance(token, str) and _TOKEN_PATTERN.match(token) is not None


def ensure_fingerprint(token) -> str:
    """Return ``token`` unchanged or raise ``IntegrityError`` if malformed."""
    if not validate_fingerprint(token):
        raise IntegrityError(f"Malformed fingerprint token: {str(token)[:32]!r}", token=token)
    return token


def extract_hash(token) -> str | None:
    if not validate_fingerprint(token):
        return None
    return _TOKEN_PATTERN.match(token).group(1)


def compare_fingerprints(first, second) -> bool:
    """Equal valid tokens only; malformed tokens never match."""
    return validate_fingerprint(first) and validate_fingerprint(second) and first == second


def is_fingerprinted(record: CardRecord) -> bool:
    """Cheap prefix test used to skip records that were already migrated."""
    return isinstance(record.fingerprint, str) and record.fingerprint.startswith(PREFIX)


def record_fingerprint(record: CardRecord) -> str:
    """The record's stored token if valid, otherwise one computed from its fields."""
    if validate_fingerprint(record.fingerprint):
        return record.fingerprint
    return fingerprint(record.fields)


def generate_batch(fields_list: list) -> list[dict[str, Any]]:
    """Fingerprint many cards, reporting each result separately."""
    results = []
    for fields in fields_list:
        try:
            results.append({"success": True, "fingerprint": fingerprint(fields), "fields": fields})
        except (ValidationError, ValueError) as e:
            results.append({"success": False, "error": str(e), "fields": fields})
    return results


def display_name(fields: CardFields | dict[str, Any] | None) -> str:
    """Primary-language name for display, or "Unknown"."""
    try:
        name = bilingual.primary_text(CardFields.from_dict(fields).name)
    except ValidationError:
        return "Unknown"
    return name or "Unknown"
