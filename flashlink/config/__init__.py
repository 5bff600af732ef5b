"""Configuration helpers for FlashLink."""

from . import logging, settings  # noqa: F401  # pyright: ignore[reportUnusedImport]
from .settings import SessionConfig, build_session_config, load_session_config

__all__ = ["SessionConfig", "build_session_config", "load_session_config"]
