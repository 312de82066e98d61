"""
Exception Module

Structured exception hierarchy for the data-access layer.

Module Structure:
-----------------
- **base.py**: DataAccessError base class + ConfigurationError
- **database.py**: Pool and query failures (transient, fatal, unavailable)
- **circuit_breaker.py**: Circuit-open rejection
- **rate_limit.py**: Rate-limit rejection
- **cache.py**: Cache-layer failures

Usage:
------
```python
from src.core.exceptions import DatabaseUnavailableError, CircuitBreakerOpenError
from src.core.exceptions.cache import CacheKeyError
```

Author: System Architect
Date: 2025-12-08
"""

# Base exception
from src.core.exceptions.base import ConfigurationError, DataAccessError

# Cache exceptions
from src.core.exceptions.cache import (
    CacheConnectionError,
    CacheError,
    CacheKeyError,
    InvalidResourceTypeError,
)

# Circuit breaker exceptions
from src.core.exceptions.circuit_breaker import (
    CircuitBreakerError,
    CircuitBreakerOpenError,
)

# Database exceptions
from src.core.exceptions.database import (
    DatabaseError,
    DatabaseUnavailableError,
    FatalDatabaseError,
    TransientDatabaseError,
)

# Rate limit exceptions
from src.core.exceptions.rate_limit import RateLimitError, RateLimitExceededError

__all__ = [
    # Base
    "DataAccessError",
    "ConfigurationError",
    # Database
    "DatabaseError",
    "TransientDatabaseError",
    "FatalDatabaseError",
    "DatabaseUnavailableError",
    # Circuit breaker
    "CircuitBreakerError",
    "CircuitBreakerOpenError",
    # Rate limit
    "RateLimitError",
    "RateLimitExceededError",
    # Cache
    "CacheError",
    "CacheConnectionError",
    "CacheKeyError",
    "InvalidResourceTypeError",
]
