"""Exception hierarchy for serial session and flashing failures."""

from __future__ import annotations


class FlashLinkError(Exception):
    """Base exception for all FlashLink errors."""


class ConnectionError(FlashLinkError):
    """No device was selected, or the serial port could not be opened."""


class PortNotReadableError(FlashLinkError):
    """The transport did not report itself readable after the settle wait."""


class NotConnectedError(FlashLinkError):
    """The operation requires an open session that is absent."""


class SessionStateError(FlashLinkError):
    """The requested operation is not legal in the current session state."""


class CatalogError(FlashLinkError):
    """A firmware manifest or binary could not be resolved."""


class FlashingError(FlashLinkError):
    """Flashing failed; the underlying cause is chained as ``__cause__``."""

    def __init__(self, message: str, *, monitor_restored: bool = False) -> None:
        self.monitor_restored = monitor_restored
        super().__init__(message)


class RestorationError(FlashLinkError):
    """Monitoring could not be re-established after flashing (advisory)."""


__all__ = [
    "CatalogError",
    "ConnectionError",
    "FlashingError",
    "FlashLinkError",
    "NotConnectedError",
    "PortNotReadableError",
    "RestorationError",
    "SessionStateError",
]
