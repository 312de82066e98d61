"""
Circuit Breaker Exceptions

All exceptions related to circuit breaker operations

Author: System Architect
Date: 2025-12-08
"""

from typing import Any

from src.core.exceptions.base import DataAccessError


class CircuitBreakerError(DataAccessError):
    """Base exception for circuit breaker errors."""
    pass


class CircuitBreakerOpenError(CircuitBreakerError):
    """
    Raised when circuit breaker is open (fail fast).

    This is deliberately not a DatabaseError: it means "we chose not to call",
    not "the database failed". The operation was never invoked.

    The circuit moves to HALF_OPEN once the reset timeout has elapsed since
    the last state change; the next call after that is attempted live.
    """

    def __init__(
        self,
        message: str,
        name: str | None = None,
        retry_after: float | None = None,
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, request_id=request_id, details=details)
        self.name = name
        self.retry_after = retry_after
        if name is not None:
            self.details.setdefault("breaker", name)
        if retry_after is not None:
            self.details.setdefault("retry_after", round(retry_after, 3))
