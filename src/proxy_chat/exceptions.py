"""Domain exception hierarchy for the proxy chat client."""

from __future__ import annotations


class ProxyChatError(RuntimeError):
    """Base class for all domain-level chat errors."""


class ProxyConnectionError(ProxyChatError):
    """Raised when the local proxy cannot be reached."""


class ProxyUnavailableError(ProxyChatError):
    """Raised when no running backend is available for a send."""


class TransportError(ProxyChatError):
    """Raised when the chat endpoint answers with a non-2xx response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConversationNotFoundError(ProxyChatError):
    """Raised when a conversation id is unknown to the store."""


class MessageNotFoundError(ProxyChatError):
    """Raised when a message id is unknown within its conversation."""


class InvalidTransitionError(ProxyChatError):
    """Raised when a message status change would break monotonicity."""


class ConversationBusyError(ProxyChatError):
    """Raised when a conversation already has a response in flight."""


class AttachmentError(ProxyChatError):
    """Raised when an attachment cannot be read or fails validation."""


class ConfigValidationError(ProxyChatError):
    """Raised when configuration cannot be validated safely."""
