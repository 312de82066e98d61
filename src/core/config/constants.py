"""
System Constants and Enumerations

This module defines system-wide constants and enumerations used across
the data-access layer.

Architectural Decision: Centralized constants for maintainability
- Single source of truth for magic numbers
- Type-safe enums for state management
- SQLSTATE tables live here so classification is auditable in one place

Author: System Architect
Date: 2025-12-05
"""

from enum import Enum

# ============================================================================
# Operation Kinds
# ============================================================================


class QueryKind(str, Enum):
    """
    Explicit operation category passed by every caller.

    READ: may be served by the replica pool
    WRITE: always served by the primary pool
    """

    READ = "read"
    WRITE = "write"


class PoolRole(str, Enum):
    """Which physical pool served an operation."""

    WRITE = "write"
    READ = "read"


# ============================================================================
# Circuit Breaker States
# ============================================================================


class CircuitState(str, Enum):
    """
    Circuit breaker states.

    CLOSED: Normal operation, requests allowed
    OPEN: Failing fast, requests blocked
    HALF_OPEN: Testing recovery, limited requests
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


# ============================================================================
# Health
# ============================================================================


class HealthStatus(str, Enum):
    """Aggregated service health."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


# ============================================================================
# Database Error Classification
# ============================================================================

# SQLSTATE codes worth one more attempt (connection loss, exhaustion,
# serialization conflicts, lock timeouts)
RETRYABLE_SQLSTATES = frozenset({
    "08000",  # connection_exception
    "08003",  # connection_does_not_exist
    "08006",  # connection_failure
    "08001",  # sqlclient_unable_to_establish_sqlconnection
    "08004",  # sqlserver_rejected_establishment_of_sqlconnection
    "57P02",  # crash_shutdown
    "57P03",  # cannot_connect_now
    "58000",  # system_error
    "58030",  # io_error
    "40001",  # serialization_failure
    "40P01",  # deadlock_detected
    "55P03",  # lock_not_available
    "53300",  # too_many_connections
    "53400",  # configuration_limit_exceeded
})

# Never retried
FATAL_SQLSTATES = frozenset({
    "57P01",  # admin_shutdown
    "08P01",  # protocol_violation
})

# One retry per call, never more
MAX_DB_ATTEMPTS = 2

# ============================================================================
# Component Defaults
# ============================================================================

CB_DEFAULT_SUCCESS_THRESHOLD = 3  # HALF_OPEN successes before closing
CB_DEFAULT_STATE_TTL = 300  # seconds
CB_DEFAULT_REFRESH_INTERVAL = 1.0  # seconds local state is trusted

RATE_LIMIT_DEFAULT_MAX_IDENTIFIERS = 500

CACHE_DEFAULT_TTL = 300
CACHE_SCAN_BATCH_SIZE = 500  # keys per SCAN page during pattern deletes

# Database retry hint for clients (seconds)
DB_RETRY_AFTER_SECONDS = 5

# ============================================================================
# Redis Key Prefixes
# ============================================================================

REDIS_KEY_CIRCUIT = "circuit"
REDIS_KEY_RATE_LIMIT = "ratelimit"

# ============================================================================
# HTTP Headers
# ============================================================================

HEADER_REQUEST_ID = "X-Request-ID"
HEADER_USER_ID = "X-User-ID"
HEADER_RATE_LIMIT = "X-RateLimit-Limit"
HEADER_RATE_REMAINING = "X-RateLimit-Remaining"
HEADER_RATE_RESET = "X-RateLimit-Reset"
HEADER_RESPONSE_TIME = "X-Response-Time"
HEADER_DB_WRITE_AVAILABLE = "X-DB-Write-Available"
HEADER_DB_READ_AVAILABLE = "X-DB-Read-Available"
HEADER_DB_SPLIT_ENABLED = "X-DB-Split-Enabled"
