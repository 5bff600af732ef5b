"""JSON logging for FlashLink.

Every record becomes one JSON object per line. Records logged by the
session, transport and read loop carry the serial context (``port``,
``mode``, ``baud_rate``) as ``extra=`` fields; the formatter lifts those to
the top level so a log line can be attributed to a device without parsing
the message text.
"""

from __future__ import annotations

import logging
import os
import sys
from datetime import datetime, timezone
from logging.config import dictConfig
from typing import Any

import msgspec

from ..const import LOG_STREAM_ENV_VAR, LOGGER_NAMESPACE
from .settings import SessionConfig

CONTEXT_FIELDS: tuple[str, ...] = ("port", "mode", "baud_rate")

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_ATTRIBUTES = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}


def _json_value(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, (bytes, bytearray, memoryview)):
        return bytes(value).hex(" ").upper()
    return repr(value)


def log_context(*, port: str | None, mode: str | None = None, baud_rate: int | None = None) -> dict[str, Any]:
    """Build the ``extra=`` mapping for a record about one serial device."""
    context: dict[str, Any] = {"port": port}
    if mode is not None:
        context["mode"] = mode
    if baud_rate is not None:
        context["baud_rate"] = baud_rate
    return context


class StructuredLogFormatter(logging.Formatter):
    """Render records as JSON, with serial context as top-level keys."""

    def format(self, record: logging.LogRecord) -> str:
        name = record.name
        if name == LOGGER_NAMESPACE or name.startswith(f"{LOGGER_NAMESPACE}."):
            name = name[len(LOGGER_NAMESPACE) :].lstrip(".") or LOGGER_NAMESPACE

        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(timespec="milliseconds"),
            "level": record.levelname.lower(),
            "logger": name,
            "message": record.getMessage(),
        }

        fields = {key: value for key, value in vars(record).items() if key not in _RECORD_ATTRIBUTES}
        for key in CONTEXT_FIELDS:
            if key in fields:
                entry[key] = _json_value(fields.pop(key))
        extra = {key: _json_value(value) for key, value in fields.items() if not key.startswith("_")}
        if extra:
            entry["extra"] = extra

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return msgspec.json.encode(entry).decode("utf-8")


def _stream_handler() -> logging.Handler:
    # Monitor output goes to stdout; diagnostics stay on stderr unless redirected.
    if os.environ.get(LOG_STREAM_ENV_VAR, "").strip().lower() == "stdout":
        return logging.StreamHandler(sys.stdout)
    return logging.StreamHandler(sys.stderr)


def configure_logging(config: SessionConfig) -> None:
    """Install the JSON formatter on the root logger at the configured level."""

    level_name = "DEBUG" if config.debug_logging else "INFO"

    dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {"json": {"()": StructuredLogFormatter}},
            "handlers": {
                "stream": {
                    "()": _stream_handler,
                    "level": level_name,
                    "formatter": "json",
                }
            },
            "root": {"level": level_name, "handlers": ["stream"]},
        }
    )

    logging.getLogger(LOGGER_NAMESPACE).debug("Logging configured at level %s", level_name)


__all__ = ["CONTEXT_FIELDS", "StructuredLogFormatter", "configure_logging", "log_context"]
