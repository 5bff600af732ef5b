"""FlashLink package initialisation."""

__version__ = "1.0.0"

from .errors import (
    ConnectionError,
    FlashingError,
    FlashLinkError,
    NotConnectedError,
    PortNotReadableError,
    RestorationError,
    SessionStateError,
)
from .state.session import Session, SessionSnapshot

__all__ = [
    "ConnectionError",
    "FlashingError",
    "FlashLinkError",
    "NotConnectedError",
    "PortNotReadableError",
    "RestorationError",
    "Session",
    "SessionSnapshot",
    "SessionStateError",
]
