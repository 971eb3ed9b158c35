"""
Error taxonomy for the chat core.

Routers translate these into HTTP responses; services raise them and never
return "empty" results for a failed mutation.
"""
from typing import Any, Dict, List, Optional
from uuid import UUID


class ChatError(Exception):
    """Base class for chat core failures."""

    code = "INTERNAL_SERVER_ERROR"
    status_code = 500


class NotFound(ChatError):
    """Session absent or not owned by the caller."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, message: str = "Chat session not found"):
        super().__init__(message)
        self.message = message


class ValidationFailed(ChatError):
    code = "VALIDATION_FAILED"
    status_code = 422

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message)
        self.message = message
        self.errors = errors or []


class DecodeFailed(ChatError):
    """A persisted message does not parse or validate."""

    code = "DECODE_FAILED"

    def __init__(self, message_id: Optional[UUID], reason: str):
        super().__init__(f"Failed to parse message data (message {message_id}): {reason}")
        self.message_id = message_id
        self.reason = reason


class WriteFaulted(ChatError):
    """A write that should have returned rows returned none."""

    code = "WRITE_FAULTED"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class EncodeFailed(ValueError):
    """Content handed to the encoder cannot be stored."""
