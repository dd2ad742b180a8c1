"""
Logging configuration for the card store.

Every sink goes through ``redact_secrets``: values bound under a secret
name (passphrase parts, salts, key bytes, verifier bytes) or written as
``name=value`` in the message are masked, and raw ``bytes`` bound under
any name are replaced by their length.

    logger.bind(card_id=record.id, salt=salt).info("...")   # salt is masked
"""

import os
import re
import sys
from pathlib import Path

from loguru import logger

from cardstore.config import settings

REDACTED = "[redacted]"

SECRET_NAMES = frozenset({
    "passphrase",
    "phrases",
    "parts",
    "combined",
    "salt",
    "key",
    "key_bytes",
    "verifier",
    "verifier_ciphertext",
    "verifier_iv",
    "ciphertext",
    "iv",
})

# "salt=..." / "passphrase: ..." inside message text; the name is kept, the value masked
_INLINE_SECRET = re.compile(
    r"\b(" + "|".join(sorted(SECRET_NAMES, key=len, reverse=True)) + r")(\s*[=:]\s*)\S+",
    flags=re.IGNORECASE,
)

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message} | {extra}"


def redact_secrets(record: dict) -> None:
    """Loguru patcher masking secret values in the message and bound extras."""
    record["message"] = _INLINE_SECRET.sub(rf"\1\2{REDACTED}", record["message"])
    extra = record["extra"]
    for name, value in extra.items():
        if name.lower() in SECRET_NAMES:
            extra[name] = REDACTED
        elif isinstance(value, (bytes, bytearray)):
            extra[name] = f"<{len(value)} bytes>"


def setup_logging(
    level: str | None = None,
    log_file: Path | None = None,
    rotation: str = "10 MB",
    retention: str = "1 week",
) -> None:
    """
    Install the stderr sink and, when ``log_file`` is given, a rotating
    compressed file sink. Replaces any sinks added before.
    """
    level = level or settings.log_level

    logger.remove()
    logger.configure(patcher=redact_secrets)
    logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, colorize=True)

    if log_file:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            level=level,
            format=FILE_FORMAT,
            rotation=rotation,
            retention=retention,
            compression="gz",
        )

    logger.debug(f"Logging configured: level={level}, file={log_file or '-'}")


if os.environ.get("DISABLE_LOGGING") != "1":
    setup_logging()
