"""General-purpose utilities for FlashLink."""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Mapping
from typing import Any

__all__ = [
    "log_hexdump",
    "md5_hex",
    "to_payload",
]


def log_hexdump(
    logger_instance: logging.Logger,
    level: int,
    label: str,
    data: bytes,
    *,
    extra: Mapping[str, Any] | None = None,
) -> None:
    """Log binary data in hexadecimal format.

    Format: [HEXDUMP] %s: %s
    """
    if not logger_instance.isEnabledFor(level):
        return

    hex_str = data.hex(" ").upper()
    logger_instance.log(level, "[HEXDUMP] %s: %s", label, hex_str, extra=extra)


def md5_hex(image: bytes) -> str:
    """Digest used by flash engines to verify written images."""
    return hashlib.md5(image).hexdigest()


def to_payload(data: str | bytes | bytearray | memoryview) -> bytes:
    """Encode outgoing monitor input; text is sent as UTF-8."""
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)
