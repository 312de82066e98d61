"""
Database Exceptions

Exceptions raised by the connection pool manager. The split mirrors the
retry taxonomy: transient conditions may be retried once, fatal ones never.

Author: System Architect
Date: 2025-12-09
"""

from typing import Any

from src.core.exceptions.base import DataAccessError


class DatabaseError(DataAccessError):
    """Base exception for database access errors."""

    def __init__(
        self,
        message: str = "Database error",
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
        code: str | None = None,
    ):
        super().__init__(message, request_id=request_id, details=details)
        self.code = code or self.details.get("code")


class TransientDatabaseError(DatabaseError):
    """
    Raised for a retryable condition (connection exhaustion, network blip).

    Common causes:
    - too_many_connections (53300)
    - connection reset / refused
    - serialization failure or deadlock
    """
    pass


class FatalDatabaseError(DatabaseError):
    """
    Raised for conditions that must never be retried.

    Common causes:
    - admin_shutdown (57P01)
    - protocol_violation (08P01)
    """
    pass


class DatabaseUnavailableError(DatabaseError):
    """
    Raised when the database cannot serve the call.

    Common causes:
    - The single retry also failed
    - The pool could not be opened
    - Both pools are unhealthy
    """
    pass
