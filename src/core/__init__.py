"""
Core Module

Foundational components: configuration, logging, exceptions and the
resilience primitives (pool manager, circuit breaker, rate limiter).
"""

from .exceptions import (
    CacheError,
    CircuitBreakerOpenError,
    ConfigurationError,
    DataAccessError,
    DatabaseUnavailableError,
    FatalDatabaseError,
    RateLimitExceededError,
    TransientDatabaseError,
)
from .logging import (
    clear_request_id,
    get_logger,
    get_request_id,
    log_stage,
    set_request_id,
    setup_logging,
)

__all__ = [
    "CacheError",
    "CircuitBreakerOpenError",
    "ConfigurationError",
    "DataAccessError",
    "DatabaseUnavailableError",
    "FatalDatabaseError",
    "RateLimitExceededError",
    "TransientDatabaseError",
    "clear_request_id",
    "get_logger",
    "get_request_id",
    "log_stage",
    "set_request_id",
    "setup_logging",
]
