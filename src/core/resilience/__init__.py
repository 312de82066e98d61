"""
Resilience Module

Request-path protection for the data-access layer.

Components:
- ConnectionPoolManager: read/write pool routing with health fallback
- CircuitBreaker: failure-triggered request shedding
- SlidingWindowRateLimiter: per-identifier admission control
- retry_policy: SQLSTATE classification and the bounded retry
"""

from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitBreakerState,
    InMemoryCircuitStore,
    RedisCircuitStore,
    create_circuit_breaker,
    is_outage_error,
)
from .connection_pool_manager import ConnectionHealth, ConnectionPoolManager, PoolConfig
from .rate_limiter import (
    InMemoryWindowStore,
    RateLimitDecision,
    RateLimiterRegistry,
    RedisWindowStore,
    SlidingWindowRateLimiter,
    TokenBucket,
    authenticated_identifier,
    default_identifier,
    network_identifier,
)
from .retry_policy import ErrorClass, classify_error

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "InMemoryCircuitStore",
    "RedisCircuitStore",
    "create_circuit_breaker",
    "is_outage_error",
    "ConnectionHealth",
    "ConnectionPoolManager",
    "PoolConfig",
    "InMemoryWindowStore",
    "RateLimitDecision",
    "RateLimiterRegistry",
    "RedisWindowStore",
    "SlidingWindowRateLimiter",
    "TokenBucket",
    "authenticated_identifier",
    "default_identifier",
    "network_identifier",
    "ErrorClass",
    "classify_error",
]
