"""Utility modules for the card store."""

from cardstore.utils.logging import setup_logging
from cardstore.utils.text import clean_string, similarity_ratio

__all__ = [
    # Logging
    "setup_logging",
    # Text utilities
    "clean_string",
    "similarity_ratio",
]
