"""
InboxGuard Error Handling

Specific error types with user-friendly messages and debugging context.
"""
import re
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import HTTPException


GENERIC_ERROR_MESSAGE = "Something went wrong. Please try again."
SYNC_UNAVAILABLE_MESSAGE = "Sync unavailable, data may be delayed"
MAX_DISPLAY_ERROR_LENGTH = 200


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors (400s)
    INVALID_SETTINGS = "INVALID_SETTINGS"
    UNKNOWN_ACTION = "UNKNOWN_ACTION"
    INVALID_TRANSITION = "INVALID_TRANSITION"
    UNKNOWN_CHANNEL = "UNKNOWN_CHANNEL"

    # Lookup errors (404)
    ITEM_NOT_FOUND = "ITEM_NOT_FOUND"

    # Processing errors (500s)
    SYNC_FAILED = "SYNC_FAILED"
    ACTION_FAILED = "ACTION_FAILED"

    # External service errors
    CHANNEL_ERROR = "CHANNEL_ERROR"
    CHANNEL_AUTH = "CHANNEL_AUTH"


class InboxGuardError(Exception):
    """Base exception with structured error info."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        return result


class SettingsError(InboxGuardError):
    """Guardrail settings patch rejected."""

    def __init__(self, field: str, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_SETTINGS,
            message=f"Invalid guardrail setting '{field}'",
            detail=detail,
            context={"field": field}
        )


class UnknownActionError(InboxGuardError):
    """Action name not part of the lifecycle vocabulary."""

    def __init__(self, action: Any, allowed: Optional[list] = None):
        context: Dict[str, Any] = {"action": str(action)}
        if allowed:
            context["allowed"] = list(allowed)
        super().__init__(
            code=ErrorCode.UNKNOWN_ACTION,
            message=f"Unknown action: '{action}'",
            context=context
        )


class InvalidTransitionError(InboxGuardError, ValueError):
    """Raised when an invalid lifecycle transition is attempted."""

    def __init__(self, from_state: str, to_state: str, detail: Optional[str] = None):
        super().__init__(
            code=ErrorCode.INVALID_TRANSITION,
            message=f"Invalid transition: {from_state} -> {to_state}",
            detail=detail,
            context={"from_state": from_state, "to_state": to_state}
        )


class UnknownChannelError(InboxGuardError):

    def __init__(self, channel: str):
        super().__init__(
            code=ErrorCode.UNKNOWN_CHANNEL,
            message=f"Unknown channel: {channel}",
            context={"channel": str(channel)}
        )


class ItemNotFoundError(InboxGuardError):

    def __init__(self, item_id: str):
        super().__init__(
            code=ErrorCode.ITEM_NOT_FOUND,
            message=f"Item not found: {item_id}",
            context={"item_id": item_id}
        )


class SyncError(InboxGuardError):
    """A channel sync attempt failed (transient)."""

    def __init__(self, channel: str, detail: str):
        super().__init__(
            code=ErrorCode.SYNC_FAILED,
            message=f"{channel} sync failed",
            detail=detail,
            context={"channel": channel}
        )


class ActionError(InboxGuardError):
    """An individual apply_action call failed."""

    def __init__(self, item_id: str, action: str, detail: str):
        super().__init__(
            code=ErrorCode.ACTION_FAILED,
            message=f"Could not {action.replace('_', ' ')} this item",
            detail=detail,
            context={"item_id": item_id, "action": action}
        )


class ChannelError(InboxGuardError):
    """Error talking to the host application for a channel."""

    def __init__(self, channel: str, detail: str, status_code: Optional[int] = None):
        code = ErrorCode.CHANNEL_AUTH if status_code in (401, 403) else ErrorCode.CHANNEL_ERROR
        context: Dict[str, Any] = {"channel": channel}
        if status_code is not None:
            context["status_code"] = status_code
        super().__init__(
            code=code,
            message=f"{channel} channel error",
            detail=detail,
            context=context
        )


def to_http_exception(error: InboxGuardError) -> HTTPException:
    """Convert InboxGuardError to HTTPException."""
    status_map = {
        ErrorCode.INVALID_SETTINGS: 400,
        ErrorCode.UNKNOWN_ACTION: 400,
        ErrorCode.INVALID_TRANSITION: 409,
        ErrorCode.UNKNOWN_CHANNEL: 404,
        ErrorCode.ITEM_NOT_FOUND: 404,
        ErrorCode.SYNC_FAILED: 502,
        ErrorCode.ACTION_FAILED: 502,
        ErrorCode.CHANNEL_ERROR: 502,
        ErrorCode.CHANNEL_AUTH: 401,
    }

    return HTTPException(
        status_code=status_map.get(error.code, 500),
        detail=error.to_dict()
    )


# Anything that reads like a trace, an opaque identifier or a diagnostic dump.
_DIAGNOSTIC_PATTERNS = [
    re.compile(r"traceback", re.IGNORECASE),
    re.compile(r'File "[^"]+", line \d+'),
    re.compile(r"\bat [\w.$<>]+ \(.*:\d+:\d+\)"),
    re.compile(r"\b(request|trace|correlation|span)[ _-]?id\b", re.IGNORECASE),
    re.compile(r"\b(req|trace)_[A-Za-z0-9]{8,}\b"),
    re.compile(r"\b[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}\b", re.IGNORECASE),
    re.compile(r"\b[0-9a-f]{16,}\b", re.IGNORECASE),
    re.compile(r"\bdiagnostic", re.IGNORECASE),
    re.compile(r"\b\w+(Exception|Error):\s"),
    re.compile(r"[{\[]\s*\""),
]


def sanitize_error_message(message: Optional[str], fallback: str = GENERIC_ERROR_MESSAGE) -> str:
    """Return text safe to show a user, or the generic fallback."""
    if message is None:
        return fallback
    text = str(message).strip()
    if not text or len(text) > MAX_DISPLAY_ERROR_LENGTH:
        return fallback
    for pattern in _DIAGNOSTIC_PATTERNS:
        if pattern.search(text):
            return fallback
    return text


def user_message(error: BaseException, fallback: str = GENERIC_ERROR_MESSAGE) -> str:
    """Display text for an exception caught at a fetch/action boundary."""
    if isinstance(error, InboxGuardError):
        return sanitize_error_message(error.detail or error.message, fallback)
    return sanitize_error_message(str(error), fallback)
