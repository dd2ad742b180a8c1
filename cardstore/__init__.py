"""Encrypted, content-addressed business card store."""

__version__ = "0.3.0"
