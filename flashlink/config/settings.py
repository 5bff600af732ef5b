"""Settings loader for FlashLink sessions.

Configuration is read from the ``[flashlink]`` table of a TOML file with
defaults for every key. Values are validated declaratively by msgspec; the
settle and reset delays are tunables, not protocol constants.
"""

from __future__ import annotations

import logging
import os
import tomllib
from pathlib import Path
from typing import Annotated, Any

import msgspec

from ..const import (
    CONFIG_ENV_VAR,
    CONFIG_TABLE,
    DEFAULT_CONNECT_SETTLE_DELAY,
    DEFAULT_FLASH_BAUDRATE,
    DEFAULT_MONITOR_BAUDRATE,
    DEFAULT_MONITOR_BUFFER_BYTES,
    DEFAULT_PROGRESS_BAR_WIDTH,
    DEFAULT_READ_CHUNK_SIZE,
    DEFAULT_READ_SETTLE_DELAY,
    DEFAULT_RESET_BOOT_WAIT,
    DEFAULT_RESET_PULSE,
    MAX_BAUDRATE,
    MAX_PROGRESS_BAR_WIDTH,
    MAX_READ_CHUNK_SIZE,
    MAX_RESET_DELAY,
    MAX_SETTLE_DELAY,
    MIN_BAUDRATE,
)

logger = logging.getLogger("flashlink.config")

Baudrate = Annotated[int, msgspec.Meta(ge=MIN_BAUDRATE, le=MAX_BAUDRATE)]
SettleDelay = Annotated[float, msgspec.Meta(ge=0.0, le=MAX_SETTLE_DELAY)]
ResetDelay = Annotated[float, msgspec.Meta(ge=0.0, le=MAX_RESET_DELAY)]
UsbId = Annotated[int, msgspec.Meta(ge=0, le=0xFFFF)]


class SessionConfig(msgspec.Struct, frozen=True, kw_only=True, forbid_unknown_fields=True):
    """Strongly typed configuration for a serial session."""

    serial_port: str | None = None
    usb_vendor_id: UsbId | None = None
    usb_product_id: UsbId | None = None
    monitor_baud: Baudrate = DEFAULT_MONITOR_BAUDRATE
    flash_baud: Baudrate = DEFAULT_FLASH_BAUDRATE
    connect_settle_delay: SettleDelay = DEFAULT_CONNECT_SETTLE_DELAY
    read_settle_delay: SettleDelay = DEFAULT_READ_SETTLE_DELAY
    reset_pulse: ResetDelay = DEFAULT_RESET_PULSE
    reset_boot_wait: ResetDelay = DEFAULT_RESET_BOOT_WAIT
    read_chunk_size: Annotated[int, msgspec.Meta(ge=1, le=MAX_READ_CHUNK_SIZE)] = DEFAULT_READ_CHUNK_SIZE
    progress_bar_width: Annotated[int, msgspec.Meta(ge=1, le=MAX_PROGRESS_BAR_WIDTH)] = DEFAULT_PROGRESS_BAR_WIDTH
    monitor_buffer_bytes: Annotated[int, msgspec.Meta(ge=1)] = DEFAULT_MONITOR_BUFFER_BYTES
    firmware_root: str | None = None
    debug_logging: bool = False

    def __post_init__(self) -> None:
        if self.serial_port is not None and not self.serial_port.strip():
            raise ValueError("serial_port must be a non-empty path when set")
        if self.firmware_root is not None and not self.firmware_root.strip():
            raise ValueError("firmware_root must be a non-empty path when set")


def build_session_config(raw: dict[str, Any]) -> SessionConfig:
    """Validate a raw mapping into a :class:`SessionConfig`."""
    try:
        return msgspec.convert(raw, SessionConfig, strict=False)
    except msgspec.ValidationError as exc:
        raise ValueError(f"Invalid flashlink configuration: {exc}") from exc


def _resolve_config_path(path: str | os.PathLike[str] | None) -> Path | None:
    if path is not None:
        return Path(path)
    env_value = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if env_value:
        return Path(env_value)
    return None


def load_session_config(path: str | os.PathLike[str] | None = None) -> SessionConfig:
    """Load configuration from a TOML file, ``$FLASHLINK_CONFIG`` or defaults."""

    config_path = _resolve_config_path(path)
    if config_path is None:
        logger.debug("No configuration file given; using defaults.")
        return SessionConfig()

    try:
        with config_path.open("rb") as handle:
            document = tomllib.load(handle)
    except OSError as exc:
        raise ValueError(f"Cannot read configuration file {config_path}: {exc}") from exc
    except tomllib.TOMLDecodeError as exc:
        raise ValueError(f"Malformed configuration file {config_path}: {exc}") from exc

    section = document.get(CONFIG_TABLE, {})
    if not isinstance(section, dict):
        raise ValueError(f"[{CONFIG_TABLE}] in {config_path} must be a table")

    config = build_session_config(section)
    logger.info("Loaded configuration from %s", config_path)
    return config


__all__ = ["SessionConfig", "build_session_config", "load_session_config"]
