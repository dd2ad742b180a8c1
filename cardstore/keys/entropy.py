"""Passphrase shape checks and the entropy estimate used as an acceptance gate."""

import math
from collections.abc import Mapping, Sequence

from cardstore.errors import ValidationError

JOINER = "|"


def validate_phrase_structure(parts, phrase_count: int) -> list[str]:
    """
    Return the phrase parts as a list of stripped strings.

    Accepts a sequence of strings or a mapping keyed ``phrase1`` ..
    ``phraseN``. Raises ``ValidationError`` for any other shape, a wrong
    number of parts, or an empty part.
    """
    if isinstance(parts, Mapping):
        keys = [f"phrase{i}" for i in range(1, phrase_count + 1)]
        missing = [k for k in keys if k not in parts]
        if missing or len(parts) != phrase_count:
            raise ValidationError(f"Expected keys {', '.join(keys)}", field="phrases")
        values = [parts[k] for k in keys]
    elif isinstance(parts, Sequence) and not isinstance(parts, (str, bytes)):
        values = list(parts)
        if len(values) != phrase_count:
            raise ValidationError(f"Expected {phrase_count} phrases, got {len(values)}", field="phrases")
    else:
        raise ValidationError("Phrases must be a list or a phrase1..phraseN mapping", field="phrases")

    phrases = []
    for i, value in enumerate(values, start=1):
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"Phrase {i} must be a non-empty string", field=f"phrase{i}")
        phrases.append(value.strip())
    return phrases


def combine_phrases(phrases: list[str]) -> str:
    return JOINER.join(phrases)


def estimate_entropy(combined: str) -> float:
    """
    Bits of entropy as ``log2(unique_chars ** length)``.

    Character diversity is counted case-insensitively. This overestimates
    dictionary phrases badly and is kept only so existing stores accept the
    same passphrases.
    """
    if not combined:
        return 0.0
    unique = len(set(combined.lower()))
    return len(combined) * math.log2(unique)
