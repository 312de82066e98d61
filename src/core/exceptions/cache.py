"""
Cache-Related Exceptions

All exceptions related to caching operations (Redis, in-memory cache, etc.)
Cache failures never fail a request: the cache service catches these and
degrades to a miss.

Author: System Architect
Date: 2025-12-08
"""

from src.core.exceptions.base import DataAccessError


class CacheError(DataAccessError):
    """Base exception for cache-related errors."""
    pass


class CacheConnectionError(CacheError):
    """
    Raised when unable to connect to cache (Redis).

    Common causes:
    - Redis server is down
    - Network connectivity issues
    - Incorrect host/port configuration
    - Authentication failure
    """
    pass


class CacheKeyError(CacheError):
    """
    Raised when a cache key operation fails.

    Common causes:
    - Operation timeout
    - Memory limit exceeded
    - Connection dropped mid-command
    """
    pass


class InvalidResourceTypeError(CacheError):
    """Raised when an invalidation request names an unknown resource type."""
    pass
