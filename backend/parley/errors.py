"""Domain errors raised by the chat core and its services.

Every error carries a short machine-readable ``code`` and the HTTP status the
REST layer maps it to. The WebSocket gateway sends ``{type: "error", code,
error}`` to the originating connection only; nothing is broadcast for a
failed request.
"""
from typing import Optional


class ChatError(Exception):
    """Base class for all chat domain errors."""

    code: str = "error"
    status_code: int = 500

    def __init__(self, message: str = "", *, code: Optional[str] = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code

    def to_event(self) -> dict:
        """Outbound WebSocket error payload."""
        return {"type": "error", "code": self.code, "error": self.message}


class AccessDenied(ChatError):
    """Actor is not a member of the target chat."""

    code = "access_denied"
    status_code = 403


class NotFound(ChatError):
    """Chat, message or user does not exist."""

    code = "not_found"
    status_code = 404


class ValidationError(ChatError):
    """Request rejected before any store call (empty content, missing field)."""

    code = "validation_error"
    status_code = 400


class TransientStoreError(ChatError):
    """Durable store failed. The client may retry by re-issuing the action."""

    code = "store_unavailable"
    status_code = 503


class UnregisteredConnection(ChatError):
    """Event received from a connection that never completed ``join_chat``."""

    code = "unregistered_connection"
    status_code = 401


class PayloadTooLarge(ChatError):
    """Uploaded blob exceeds the configured size limit."""

    code = "payload_too_large"
    status_code = 413
