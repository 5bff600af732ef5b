"""Session state for FlashLink."""

from .session import Session, SessionSnapshot, SessionState

__all__ = ["Session", "SessionSnapshot", "SessionState"]
