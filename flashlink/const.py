"""Shared constants for FlashLink."""

from __future__ import annotations

from typing import Final

LOGGER_NAMESPACE: Final[str] = "flashlink"

DEFAULT_MONITOR_BAUDRATE: Final[int] = 115200
DEFAULT_FLASH_BAUDRATE: Final[int] = 460800
MIN_BAUDRATE: Final[int] = 300
MAX_BAUDRATE: Final[int] = 4_000_000

# Settle delays are empirical; some USB-serial bridges report readability late.
DEFAULT_CONNECT_SETTLE_DELAY: Final[float] = 0.2
DEFAULT_READ_SETTLE_DELAY: Final[float] = 0.1
MAX_SETTLE_DELAY: Final[float] = 10.0

DEFAULT_RESET_PULSE: Final[float] = 0.1
DEFAULT_RESET_BOOT_WAIT: Final[float] = 3.0
MAX_RESET_DELAY: Final[float] = 30.0

DEFAULT_READ_CHUNK_SIZE: Final[int] = 4096
MAX_READ_CHUNK_SIZE: Final[int] = 65536

DEFAULT_PROGRESS_BAR_WIDTH: Final[int] = 20
MAX_PROGRESS_BAR_WIDTH: Final[int] = 200
PROGRESS_FILLED_CHAR: Final[str] = "█"
PROGRESS_EMPTY_CHAR: Final[str] = "-"

DEFAULT_MONITOR_BUFFER_BYTES: Final[int] = 65536
DEFAULT_MONITOR_BUFFER_ITEMS: Final[int] = 4096

# Conservative write parameters: DIO at 40MHz boots on boards that hang in QIO.
FLASH_MODE: Final[str] = "dio"
FLASH_FREQ: Final[str] = "40m"
FLASH_SIZE: Final[str] = "detect"

CONFIG_ENV_VAR: Final[str] = "FLASHLINK_CONFIG"
CONFIG_TABLE: Final[str] = "flashlink"
LOG_STREAM_ENV_VAR: Final[str] = "FLASHLINK_LOG_STREAM"

MONITOR_NOT_READABLE_MESSAGE: Final[str] = "\r\n[ERROR] Port not readable. Please reconnect."
RESTORE_ADVISORY_MESSAGE: Final[str] = "Note: Please manually reconnect if serial monitor is needed."
