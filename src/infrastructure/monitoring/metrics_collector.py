#!/usr/bin/env python3
"""
Metrics Collector with Prometheus Integration

This module provides production-ready metrics collection with:
- Query latency histograms by kind and pool
- Query outcome counters
- Pool health and size gauges
- Circuit breaker states
- Rate limiter rejections and fail-open events
- Cache hit/miss rates and backend errors

Architectural Decision: prometheus-client for industry-standard metrics
- Compatible with Grafana dashboards
- Efficient storage and aggregation
- Histogram buckets for latency percentiles

Author: Senior Solution Architect
Date: 2025-12-05
"""


from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
)

from src.core.config.settings import get_settings
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


# ============================================================================
# Metric Definitions
# ============================================================================

# Database metrics
DB_QUERY_DURATION = Histogram(
    'dal_db_query_duration_seconds',
    'Database operation duration in seconds',
    ['kind', 'pool'],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.2, 0.5, 1.0, 2.5, 5.0)
)

DB_QUERIES = Counter(
    'dal_db_queries_total',
    'Total database operations by outcome',
    ['kind', 'pool', 'outcome']  # success, error
)

DB_RETRIES = Counter(
    'dal_db_retries_total',
    'Total database retries and read fallbacks',
    ['pool', 'reason']
)

DB_POOL_UP = Gauge(
    'dal_db_pool_up',
    'Pool health from the last liveness probe (1=up, 0=down)',
    ['pool']
)

DB_POOL_SIZE = Gauge(
    'dal_db_pool_connections',
    'Pool connections by state',
    ['pool', 'state']  # total, idle
)

DB_SLOW_QUERIES = Counter(
    'dal_db_slow_queries_total',
    'Operations slower than the per-kind threshold',
    ['pool']
)

# Circuit breaker metrics
CIRCUIT_BREAKER_STATE = Gauge(
    'dal_circuit_breaker_state',
    'Circuit breaker state (0=closed, 1=half_open, 2=open)',
    ['breaker']
)

CIRCUIT_BREAKER_FAILURES = Counter(
    'dal_circuit_breaker_failures_total',
    'Total circuit breaker recorded failures',
    ['breaker']
)

CIRCUIT_BREAKER_REJECTIONS = Counter(
    'dal_circuit_breaker_rejections_total',
    'Calls rejected without invoking the operation',
    ['breaker']
)

CIRCUIT_BREAKER_STORE_ERRORS = Counter(
    'dal_circuit_breaker_store_errors_total',
    'Shared state store failures (breaker fell back to local state)',
    ['breaker']
)

# Rate limiting metrics
RATE_LIMIT_EXCEEDED = Counter(
    'dal_rate_limit_exceeded_total',
    'Total rate limit exceeded events',
    ['limiter', 'identifier_type']  # ip, user, token
)

RATE_LIMIT_FAIL_OPEN = Counter(
    'dal_rate_limit_fail_open_total',
    'Requests admitted because the limiter store failed',
    ['limiter']
)

# Cache metrics
CACHE_HITS = Counter(
    'dal_cache_hits_total',
    'Total cache hits',
    ['prefix']
)

CACHE_MISSES = Counter(
    'dal_cache_misses_total',
    'Total cache misses',
    ['prefix']
)

CACHE_ERRORS = Counter(
    'dal_cache_errors_total',
    'Cache backend failures degraded to a miss',
    ['operation']
)

CACHE_INVALIDATIONS = Counter(
    'dal_cache_invalidations_total',
    'Keys removed by mutation-driven invalidation',
    ['resource_type']
)

# HTTP metrics
HTTP_REQUESTS = Counter(
    'dal_http_requests_total',
    'HTTP requests by method and status',
    ['method', 'status']
)

HTTP_DB_UNAVAILABLE = Counter(
    'dal_http_db_unavailable_total',
    'Requests rejected because both database pools were down'
)

ERRORS = Counter(
    'dal_errors_total',
    'Errors by type and component',
    ['error_type', 'component']
)

# App info
APP_INFO = Info(
    'dal_app',
    'Application information'
)


class MetricsCollector:
    """
    Centralized metrics collector.

    STAGE-M: Metrics collection

    This class provides:
    - Convenient methods for recording metrics
    - Prometheus metrics export

    Usage:
        metrics = MetricsCollector()

        # Record a query
        metrics.record_query("read", "read", 0.012, success=True)

        # Get Prometheus output
        output = metrics.get_prometheus_metrics()
    """

    def __init__(self):
        """Initialize metrics collector."""
        self.settings = get_settings()

        # Set app info
        APP_INFO.info({
            'version': self.settings.app.APP_VERSION,
            'environment': self.settings.app.ENVIRONMENT,
            'app_name': self.settings.app.APP_NAME
        })

        logger.info("Metrics collector initialized", stage="M.0")

    # =========================================================================
    # Database Metrics
    # =========================================================================

    def record_query(self, kind: str, pool: str, duration_seconds: float, success: bool) -> None:
        """Record one database operation."""
        DB_QUERY_DURATION.labels(kind=kind, pool=pool).observe(duration_seconds)
        DB_QUERIES.labels(kind=kind, pool=pool, outcome="success" if success else "error").inc()

    def record_db_retry(self, pool: str, reason: str) -> None:
        """Record a retry or a read-to-write fallback."""
        DB_RETRIES.labels(pool=pool, reason=reason).inc()

    def record_slow_query(self, pool: str) -> None:
        DB_SLOW_QUERIES.labels(pool=pool).inc()

    def set_pool_health(self, pool: str, healthy: bool) -> None:
        """Set pool liveness from the last probe."""
        DB_POOL_UP.labels(pool=pool).set(1 if healthy else 0)

    def set_pool_size(self, pool: str, total: int, idle: int) -> None:
        DB_POOL_SIZE.labels(pool=pool, state="total").set(total)
        DB_POOL_SIZE.labels(pool=pool, state="idle").set(idle)

    # =========================================================================
    # Circuit Breaker Metrics
    # =========================================================================

    def set_circuit_state(self, breaker: str, state: str) -> None:
        """Set circuit breaker state."""
        state_value = {"closed": 0, "half_open": 1, "open": 2}.get(state, 0)
        CIRCUIT_BREAKER_STATE.labels(breaker=breaker).set(state_value)

    def record_circuit_failure(self, breaker: str) -> None:
        """Record circuit breaker failure."""
        CIRCUIT_BREAKER_FAILURES.labels(breaker=breaker).inc()

    def record_circuit_rejection(self, breaker: str) -> None:
        CIRCUIT_BREAKER_REJECTIONS.labels(breaker=breaker).inc()

    def record_circuit_store_error(self, breaker: str) -> None:
        """Record a shared-store failure for a breaker."""
        CIRCUIT_BREAKER_STORE_ERRORS.labels(breaker=breaker).inc()

    # =========================================================================
    # Rate Limiting Metrics
    # =========================================================================

    def record_rate_limit_exceeded(self, limiter: str, identifier_type: str) -> None:
        """Record rate limit exceeded event."""
        RATE_LIMIT_EXCEEDED.labels(limiter=limiter, identifier_type=identifier_type).inc()

    def record_rate_limit_fail_open(self, limiter: str) -> None:
        RATE_LIMIT_FAIL_OPEN.labels(limiter=limiter).inc()

    # =========================================================================
    # Cache Metrics
    # =========================================================================

    def record_cache_hit(self, prefix: str) -> None:
        """Record cache hit."""
        CACHE_HITS.labels(prefix=prefix).inc()

    def record_cache_miss(self, prefix: str) -> None:
        """Record cache miss."""
        CACHE_MISSES.labels(prefix=prefix).inc()

    def record_cache_error(self, operation: str) -> None:
        CACHE_ERRORS.labels(operation=operation).inc()

    def record_cache_invalidation(self, resource_type: str, count: int) -> None:
        """Record keys removed by an invalidation."""
        CACHE_INVALIDATIONS.labels(resource_type=resource_type).inc(count)

    # =========================================================================
    # HTTP / Error Metrics
    # =========================================================================

    def record_http_request(self, method: str, status: int) -> None:
        HTTP_REQUESTS.labels(method=method, status=str(status)).inc()

    def record_db_unavailable_rejection(self) -> None:
        HTTP_DB_UNAVAILABLE.inc()

    def record_error(self, error_type: str, component: str) -> None:
        """Record error occurrence."""
        ERRORS.labels(error_type=error_type, component=component).inc()

    # =========================================================================
    # Export
    # =========================================================================

    def get_prometheus_metrics(self) -> bytes:
        """
        Get Prometheus metrics output.

        Returns:
            bytes: Prometheus text format metrics
        """
        return generate_latest(REGISTRY)

    def get_content_type(self) -> str:
        """Get Prometheus content type."""
        return CONTENT_TYPE_LATEST


# Global metrics collector
_metrics: MetricsCollector | None = None


def get_metrics_collector() -> MetricsCollector:
    """Get global metrics collector."""
    global _metrics
    if _metrics is None:
        _metrics = MetricsCollector()
    return _metrics
