"""
Rate Limiting Exceptions

All exceptions related to rate limiting operations

Author: System Architect
Date: 2025-12-08
"""

from typing import Any

from src.core.exceptions.base import DataAccessError


class RateLimitError(DataAccessError):
    """Base exception for rate limiting errors."""
    pass


class RateLimitExceededError(RateLimitError):
    """
    Raised when rate limit is exceeded.

    The layer never retries this; the caller decides whether to surface the
    retry-after hint. The HTTP response should include:
    - Retry-After
    - X-RateLimit-Limit: Maximum requests allowed
    - X-RateLimit-Remaining: Requests remaining
    - X-RateLimit-Reset: Seconds until a slot frees up
    """

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        identifier: str | None = None,
        limit: int | None = None,
        window: float | None = None,
        retry_after: float | None = None,
        request_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, request_id=request_id, details=details)
        self.identifier = identifier
        self.limit = limit
        self.window = window
        self.retry_after = retry_after
        self.details.update(
            {k: v for k, v in (("limit", limit), ("window", window), ("retry_after", retry_after))
             if v is not None}
        )
