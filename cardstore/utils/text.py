"""Text processing helpers shared by canonicalization and similarity scoring."""

import re
from difflib import SequenceMatcher

_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def clean_string(value) -> str:
    """Trim whitespace and drop ASCII control characters.

    Case is preserved. ``None`` becomes an empty string and any other
    non-string value is converted with ``str()``.
    """
    if value is None:
        return ""
    if not isinstance(value, str):
        value = str(value)
    return _CONTROL_CHARS.sub("", value.strip()).strip()


def similarity_ratio(a: str, b: str) -> float:
    """Ratio in [0, 1] of how alike two strings are (1.0 = identical)."""
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b).ratio()
