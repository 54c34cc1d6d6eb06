"""Error taxonomy and classification for model and tool failures.

Providers are inconsistent about how they report failures: some expose an
HTTP status or an error code, others only a message. classify_error() looks
at structured attributes first and falls back to message text matching, so
callers can branch on a small closed set of ErrorCode values.

Recoverable codes (TIMEOUT, RATE_LIMITED, CONNECTION_ERROR) are worth a
retry or a fallback; everything else should surface immediately.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class ErrorCode(StrEnum):
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    CONNECTION_ERROR = "CONNECTION_ERROR"
    AUTH_ERROR = "AUTH_ERROR"
    NOT_FOUND = "NOT_FOUND"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    TOOL_NOT_FOUND = "TOOL_NOT_FOUND"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


RECOVERABLE_CODES: frozenset[ErrorCode] = frozenset(
    {ErrorCode.TIMEOUT, ErrorCode.RATE_LIMITED, ErrorCode.CONNECTION_ERROR}
)

_STATUS_CODES: dict[int, ErrorCode] = {
    400: ErrorCode.VALIDATION_ERROR,
    401: ErrorCode.AUTH_ERROR,
    403: ErrorCode.AUTH_ERROR,
    404: ErrorCode.NOT_FOUND,
    408: ErrorCode.TIMEOUT,
    422: ErrorCode.VALIDATION_ERROR,
    429: ErrorCode.RATE_LIMITED,
    504: ErrorCode.TIMEOUT,
}

_ERROR_CODES: dict[str, ErrorCode] = {
    "etimedout": ErrorCode.TIMEOUT,
    "timeout": ErrorCode.TIMEOUT,
    "econnrefused": ErrorCode.CONNECTION_ERROR,
    "econnreset": ErrorCode.CONNECTION_ERROR,
    "enotfound": ErrorCode.CONNECTION_ERROR,
    "rate_limit_exceeded": ErrorCode.RATE_LIMITED,
    "insufficient_quota": ErrorCode.RATE_LIMITED,
    "invalid_api_key": ErrorCode.AUTH_ERROR,
    "unauthorized": ErrorCode.AUTH_ERROR,
    "not_found": ErrorCode.NOT_FOUND,
    "validation_error": ErrorCode.VALIDATION_ERROR,
}

# Checked in order; the first matching group wins
_TEXT_PATTERNS: tuple[tuple[ErrorCode, tuple[str, ...]], ...] = (
    (ErrorCode.TIMEOUT, ("timed out", "timeout")),
    (ErrorCode.CONNECTION_ERROR, ("econnrefused", "failed to fetch", "connection refused")),
    (ErrorCode.NOT_FOUND, ("404", "not found")),
    (ErrorCode.AUTH_ERROR, ("401", "403", "unauthorized")),
    (ErrorCode.RATE_LIMITED, ("429", "rate limit", "too many")),
    (ErrorCode.VALIDATION_ERROR, ("validation", "invalid")),
)


def _status_of(error: BaseException) -> int | None:
    for attr in ("status_code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int):
            return value
    return None


def _code_of(error: BaseException) -> str | None:
    value = getattr(error, "code", None)
    if isinstance(value, str) and value:
        return value.lower()
    return None


def classify_error(error: BaseException | str) -> ErrorCode:
    """Map an exception (or bare message) to an ErrorCode.

    Precedence: structured status, then structured code, then exception
    type, then message text.
    """
    if isinstance(error, ToolExecutionError):
        return error.code

    if isinstance(error, BaseException):
        status = _status_of(error)
        if status is not None and status in _STATUS_CODES:
            return _STATUS_CODES[status]

        code = _code_of(error)
        if code is not None and code in _ERROR_CODES:
            return _ERROR_CODES[code]

        if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
            return ErrorCode.TIMEOUT
        if isinstance(error, ConnectionError):
            return ErrorCode.CONNECTION_ERROR
        message = str(error)
    else:
        message = error

    lowered = message.lower()
    for error_code, needles in _TEXT_PATTERNS:
        if any(needle in lowered for needle in needles):
            return error_code
    return ErrorCode.UNKNOWN_ERROR


def is_recoverable(code: ErrorCode) -> bool:
    return code in RECOVERABLE_CODES


def is_rate_limit_error(error: BaseException) -> bool:
    """Return True if an exception represents provider rate limiting.

    Matches HTTP 429, the ``rate_limit_exceeded`` provider code, or message
    text containing "429", "rate limit", or "too many requests".
    """
    if _status_of(error) == 429:
        return True
    if _code_of(error) == "rate_limit_exceeded":
        return True
    lowered = str(error).lower()
    return "429" in lowered or "rate limit" in lowered or "too many requests" in lowered


# ------------------------------------------------------------------ #
# User-facing text
# ------------------------------------------------------------------ #

_FRIENDLY_BY_PREFIX: dict[str, str] = {
    "github": "GitHub isn't responding right now. The API might be temporarily unavailable.",
    "supabase": "The database isn't responding right now. Please try again shortly.",
    "calendar": "I couldn't access your calendar. You may need to re-authorize Google access.",
    "gmail": "I couldn't access your email. Please check your Google authorization.",
    "drive": "Google Drive isn't accessible right now. Try re-authorizing if this persists.",
    "control": "I couldn't control that device. Make sure Home Assistant is running.",
    "set": "I couldn't change that setting. Make sure Home Assistant is running.",
    "activate": "I couldn't activate that scene. Make sure Home Assistant is running.",
    "get": "I couldn't fetch that information right now. Please try again shortly.",
    "calculate": "The calculation couldn't be completed. Please check the expression and try again.",
    "generate": "Image generation encountered an issue. Please try again with a different prompt.",
}

_SUGGESTIONS: dict[ErrorCode, str] = {
    ErrorCode.AUTH_ERROR: "Try re-authenticating or check your API credentials in settings.",
    ErrorCode.RATE_LIMITED: "You've hit a rate limit. Please wait a moment and try again.",
    ErrorCode.TIMEOUT: "The service is responding slowly. Check your connection and try again.",
    ErrorCode.CONNECTION_ERROR: "Cannot reach the service. Check that it is running and accessible.",
    ErrorCode.NOT_FOUND: "The requested resource wasn't found. Double-check the details and try again.",
    ErrorCode.VALIDATION_ERROR: "Some of the details look invalid. Rephrase the request and try again.",
    ErrorCode.TOOL_NOT_FOUND: "That capability isn't available for this assistant.",
}


def user_friendly_error(tool: str) -> str:
    """Return a human-readable failure message for a tool."""
    prefix = tool.split("_", 1)[0].lower()
    return _FRIENDLY_BY_PREFIX.get(
        prefix,
        f"The {tool.replace('_', ' ')} tool encountered an issue. Please try again.",
    )


def recovery_suggestion(code: ErrorCode) -> str:
    return _SUGGESTIONS.get(
        code,
        "Please try again in a few moments. If the issue persists, check your settings.",
    )


# ------------------------------------------------------------------ #
# Exceptions
# ------------------------------------------------------------------ #


@dataclass(eq=False)
class ToolExecutionError(Exception):
    """A classified tool failure.

    Raised inside the tool layer (for example on timeout) and converted to
    a structured ToolResult before it leaves ToolExecutor.
    """

    code: ErrorCode
    message: str
    tool: str
    recoverable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    def __str__(self) -> str:
        return self.message

    def to_dict(self, *, include_technical: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "code": self.code.value,
            "recoverable": self.recoverable,
            "suggestion": recovery_suggestion(self.code),
        }
        if include_technical:
            payload["technical"] = self.message
        return payload


def create_tool_error(tool: str, error: BaseException | str) -> ToolExecutionError:
    """Classify an arbitrary failure into a ToolExecutionError."""
    if isinstance(error, ToolExecutionError):
        return error
    code = classify_error(error)
    return ToolExecutionError(
        code=code,
        message=str(error) or type(error).__name__,
        tool=tool,
        recoverable=is_recoverable(code),
    )
