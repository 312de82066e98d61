"""
Configuration Module

Centralized, type-safe configuration for the data-access layer.

Components:
-----------
- **settings.py**: Pydantic-based configuration with environment variable loading
- **constants.py**: Enums, SQLSTATE tables, Redis key prefixes and HTTP headers

Usage:
------
```python
from src.core.config import get_settings
from src.core.config.constants import QueryKind, CircuitState

settings = get_settings()
pool_size = settings.database.DATABASE_POOL_SIZE
```

Testing:
-------
```python
import os
from src.core.config import reload_settings

os.environ["DATABASE_READONLY_URL"] = "postgresql://replica/ecommerce"
settings = reload_settings()
```

Author: System Architect
Date: 2025-12-05
"""

from src.core.config.constants import (
    FATAL_SQLSTATES,
    HEADER_RATE_LIMIT,
    HEADER_RATE_REMAINING,
    HEADER_RATE_RESET,
    HEADER_REQUEST_ID,
    MAX_DB_ATTEMPTS,
    REDIS_KEY_CIRCUIT,
    REDIS_KEY_RATE_LIMIT,
    RETRYABLE_SQLSTATES,
    CircuitState,
    HealthStatus,
    PoolRole,
    QueryKind,
)
from src.core.config.settings import Settings, get_settings, reload_settings

__all__ = [
    # Settings
    "Settings",
    "get_settings",
    "reload_settings",
    # Enums
    "QueryKind",
    "PoolRole",
    "CircuitState",
    "HealthStatus",
    # Error classification
    "RETRYABLE_SQLSTATES",
    "FATAL_SQLSTATES",
    "MAX_DB_ATTEMPTS",
    # Redis keys
    "REDIS_KEY_CIRCUIT",
    "REDIS_KEY_RATE_LIMIT",
    # HTTP headers
    "HEADER_REQUEST_ID",
    "HEADER_RATE_LIMIT",
    "HEADER_RATE_REMAINING",
    "HEADER_RATE_RESET",
]
