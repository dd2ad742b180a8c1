"""
Bilingual text values and their canonical form.

Card fields such as name or title arrive in several shapes:

- a plain string ("王小明")
- a joined string ("王小明~Wang Xiaoming")
- a structured pair ({"zh": "王小明", "en": "Wang Xiaoming"} or
  {"primary": ..., "secondary": ...})

``coerce`` turns any of these into a ``Plain`` or ``Bilingual`` value and
``canonical_pair`` turns that value into the fixed-order pair used by both
fingerprinting and similarity scoring.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass

from cardstore.utils.text import clean_string

SEPARATOR = "~"

# Accepted key pairs for structured input, checked in order
_PAIR_KEYS = (("primary", "secondary"), ("zh", "en"))


@dataclass(frozen=True)
class Plain:
    """Single-language (or joined "A~B") text."""

    text: str


@dataclass(frozen=True)
class Bilingual:
    """Explicit primary/secondary language pair."""

    primary: str
    secondary: str


BilingualText = Plain | Bilingual


def _split_joined(text: str) -> tuple[str, str]:
    primary, _, secondary = text.partition(SEPARATOR)
    return clean_string(primary), clean_string(secondary)


def _mirror(primary: str, secondary: str) -> tuple[str, str]:
    """A value that only carries one language is that language on both sides."""
    if primary and not secondary:
        return primary, primary
    if secondary and not primary:
        return secondary, secondary
    return primary, secondary


def canonical_pair(value: BilingualText | None) -> tuple[str, str]:
    """Return the canonical ``(primary, secondary)`` pair for a value.

    Whitespace and control characters are stripped, case is kept. Missing
    values canonicalize to ``("", "")``.
    """
    if value is None:
        return "", ""
    if isinstance(value, Bilingual):
        return _mirror(clean_string(value.primary), clean_string(value.secondary))
    if SEPARATOR in value.text:
        return _mirror(*_split_joined(value.text))
    text = clean_string(value.text)
    return text, text


def is_empty(value: BilingualText | None) -> bool:
    return canonical_pair(value) == ("", "")


# =============================================================================
# Raw input coercion
# =============================================================================

# Each parser returns a value or None when the input is not its shape.
Parser = Callable[[object], BilingualText | None]


def _parse_existing(raw: object) -> BilingualText | None:
    return raw if isinstance(raw, (Plain, Bilingual)) else None


def _parse_mapping(raw: object) -> BilingualText | None:
    if not isinstance(raw, Mapping):
        return None
    for first, second in _PAIR_KEYS:
        if first in raw or second in raw:
            return Bilingual(clean_string(raw.get(first)), clean_string(raw.get(second)))
    return None


def _parse_joined(raw: object) -> BilingualText | None:
    if isinstance(raw, str) and SEPARATOR in raw:
        return Bilingual(*_split_joined(raw))
    return None


def _parse_plain(raw: object) -> BilingualText | None:
    if isinstance(raw, str):
        return Plain(clean_string(raw))
    return None


def _parse_scalar(raw: object) -> BilingualText | None:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        return Plain(clean_string(raw))
    return None


PARSERS: tuple[Parser, ...] = (
    _parse_existing,
    _parse_mapping,
    _parse_joined,
    _parse_plain,
    _parse_scalar,
)


def coerce(raw: object) -> BilingualText | None:
    """Turn a raw field value into a ``BilingualText``.

    Parsers are tried in order and the first one that recognises the shape
    wins. Returns ``None`` for missing or unrecognised values.
    """
    if raw is None:
        return None
    for parser in PARSERS:
        value = parser(raw)
        if value is not None:
            return value
    return None


def to_raw(value: BilingualText | None):
    """Serialize a value back into the plain JSON shape used for storage."""
    if value is None:
        return None
    if isinstance(value, Bilingual):
        return {"primary": value.primary, "secondary": value.secondary}
    return value.text


def primary_text(value: BilingualText | None) -> str:
    return canonical_pair(value)[0]
