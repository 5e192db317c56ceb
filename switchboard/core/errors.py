"""Exception types shared across the switchboard runtime."""
from __future__ import annotations

from typing import Optional


class SwitchboardError(Exception):
    """Base class for errors raised by switchboard components."""


class RequestCancelled(SwitchboardError):
    """Raised when the request's cancellation token fires."""

    def __init__(self, message: str = "Request cancelled") -> None:
        super().__init__(message)


class UpstreamError(SwitchboardError):
    """Failure reported by an upstream model provider."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConversationNotFound(SwitchboardError, KeyError):
    """Raised when a conversation id has no stored record."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Conversation not found: {conversation_id}")
        self.conversation_id = conversation_id

    def __str__(self) -> str:
        return self.args[0]


class RegistrationError(SwitchboardError, ValueError):
    """Raised when an agent registration is rejected."""


class InvalidIdentifier(SwitchboardError, ValueError):
    """Raised when an id cannot be used as a storage key."""
