"""Custom exceptions for replywise."""

import logging
from typing import Any

logger = logging.getLogger(__name__)

# Exception type → safe user-facing message mapping
_SAFE_MESSAGES: dict[str, str] = {
    "OracleError": "The drafting service is temporarily unavailable.",
    "PatternParseError": "The drafting service returned an unreadable response.",
    "StoreError": "A storage error occurred. Please try again.",
    "PatternValidationError": "A learned pattern failed validation.",
    "CoordinatorClosedError": "Draft processing has been shut down.",
    "TimeoutError": "The operation timed out. Please try again.",
    "ValueError": "The provided value is invalid.",
}

_DEFAULT_MESSAGE = "An error occurred. Please try again."


def sanitize_error(e: BaseException) -> str:
    """Map an exception to a safe, user-facing error message.

    Walks the MRO so subclasses inherit their parent's message. Internal
    details stay in the logs.

    Args:
        e: The exception to sanitize.

    Returns:
        A safe, generic error message string.
    """
    for cls in type(e).__mro__:
        safe_msg = _SAFE_MESSAGES.get(cls.__name__)
        if safe_msg:
            return safe_msg

    return _DEFAULT_MESSAGE


class ReplywiseError(Exception):
    """Base exception for all replywise errors."""

    def __init__(
        self,
        message: str,
        code: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize replywise exception.

        Args:
            message: Human-readable error message.
            code: Machine-readable error code.
            details: Additional error details.
        """
        super().__init__(message)
        self.message = message
        self.code = code
        self.details = details or {}


class OracleError(ReplywiseError):
    """Language oracle call failed (network, timeout, empty response, open circuit)."""

    def __init__(self, message: str, model: str | None = None) -> None:
        """Initialize oracle error.

        Args:
            message: Error message.
            model: Model identifier that was being called, if known.
        """
        super().__init__(
            message=message,
            code="ORACLE_ERROR",
            details={"model": model} if model else {},
        )


class PatternParseError(ReplywiseError):
    """Oracle output could not be parsed into the expected structure."""

    def __init__(self, message: str, raw_excerpt: str = "") -> None:
        """Initialize parse error.

        Args:
            message: Error message.
            raw_excerpt: Leading part of the offending text, for logs.
        """
        super().__init__(
            message=message,
            code="PATTERN_PARSE_ERROR",
            details={"raw_excerpt": raw_excerpt[:200]},
        )


class StoreError(ReplywiseError):
    """Pattern store, draft store or cache persistence failed."""

    def __init__(self, operation: str, message: str) -> None:
        """Initialize store error.

        Args:
            operation: Store operation that failed (e.g. ``upsert_pattern``).
            message: Error message.
        """
        super().__init__(
            message=f"{operation} failed: {message}",
            code="STORE_ERROR",
            details={"operation": operation},
        )
        self.operation = operation


class PatternValidationError(ReplywiseError):
    """A candidate pattern failed shape or confidence checks."""

    def __init__(self, message: str, field: str | None = None) -> None:
        """Initialize validation error.

        Args:
            message: Error message.
            field: Offending field name, if known.
        """
        super().__init__(
            message=message,
            code="PATTERN_VALIDATION_ERROR",
            details={"field": field} if field else {},
        )


class CoordinatorClosedError(ReplywiseError):
    """Work was submitted to a coordinator after shutdown."""

    def __init__(self) -> None:
        """Initialize closed-coordinator error."""
        super().__init__(
            message="Draft coordinator has been shut down",
            code="COORDINATOR_CLOSED",
        )
