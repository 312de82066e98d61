"""
Base Exception Class

This module contains ONLY the base exception class that all other exceptions inherit from.
All specialized exceptions are in their respective themed modules.

Author: System Architect
Date: 2025-12-08
"""

from typing import Any


class DataAccessError(Exception):
    """
    Base exception for all data-access layer errors.

    All custom exceptions inherit from this class to enable:
    - One exception handler family at the HTTP boundary
    - Request ID correlation
    - Structured error logging

    Attributes:
        message: Error message
        request_id: Request ID for correlation (if available)
        details: Additional error details (dict)

    Example:
        raise DatabaseUnavailableError(
            "Write pool unreachable after retry",
            request_id="abc-123",
            details={"pool": "write", "code": "53300", "attempts": 2}
        )
    """

    def __init__(
        self, message: str, request_id: str | None = None, details: dict[str, Any] | None = None
    ):
        self.message = message
        self.request_id = request_id
        self.details = (details or {}).copy()
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """
        Convert exception to dictionary for logging/API responses.

        Returns:
            Dict with error_type, message, request_id, and details
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "request_id": self.request_id,
            "details": self.details,
        }

    def with_suggestion(self, suggestion: str) -> "DataAccessError":
        """Add a suggestion to help callers react to the error."""
        self.details["suggestion"] = suggestion
        return self

    def with_context(self, **context) -> "DataAccessError":
        """Add additional context to the error details."""
        self.details.update(context)
        return self

    def __repr__(self) -> str:
        """
        Return detailed string representation for debugging.

        Example:
            >>> error = CircuitBreakerOpenError("Circuit open", details={"name": "database"})
            >>> repr(error)
            "CircuitBreakerOpenError(message='Circuit open', details={'name': 'database'})"
        """
        details_str = f", details={self.details}" if self.details else ""
        request_id_str = f", request_id='{self.request_id}'" if self.request_id else ""
        return f"{self.__class__.__name__}(message='{self.message}'{request_id_str}{details_str})"

    @classmethod
    def from_exception(
        cls,
        exc: Exception,
        message: str | None = None,
        request_id: str | None = None,
        **details
    ) -> "DataAccessError":
        """
        Create an error of this class from another exception.

        Useful for wrapping driver exceptions (asyncpg, redis) with context.

        Example:
            >>> try:
            ...     await pool.acquire()
            ... except asyncpg.TooManyConnectionsError as e:
            ...     raise DatabaseUnavailableError.from_exception(e, pool="write") from e
        """
        error_message = message or str(exc)
        error_details = {
            "original_error": exc.__class__.__name__,
            "original_message": str(exc),
            **details
        }
        return cls(error_message, request_id=request_id, details=error_details)


# Configuration exception (kept here as it's fundamental)
class ConfigurationError(DataAccessError):
    """Raised when configuration is invalid or missing."""
    pass
