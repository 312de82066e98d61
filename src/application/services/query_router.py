"""
Query Router
============

WHAT IS THIS SERVICE?
---------------------
QueryRouter is the only entry point route handlers use to reach the
database. Every call passes through the same pipeline:

READ:
    Rate limiter admits
        → Cache hit? return it (nothing else runs)
        → Circuit breaker admits
        → Pool manager picks the read pool (write pool if replica is down)
        → Performance monitor records
        → Cache populated

WRITE / TRANSACTION:
    Rate limiter admits
        → Circuit breaker admits
        → Pool manager uses the write pool
        → Performance monitor records
        → Cache invalidated for the mutated resource

Handlers never name a pool. They state the operation kind by calling
`execute_read`, `execute_write` or `execute_transaction`, and pass a
coroutine function that receives an asyncpg connection:

    product = await router.execute_read(
        lambda conn: conn.fetchrow("SELECT * FROM products WHERE id = $1", 42),
        cache_key=CacheKeys.product(42),
    )

REQUEST CONTEXT:
----------------
`endpoint` (for performance stats) and `identifier` (for rate limiting)
default to context variables set by DatabaseRoutingMiddleware, so a
handler running inside a request does not have to thread them through.
"""

import time
from collections.abc import Awaitable, Callable
from contextvars import ContextVar, Token
from typing import Any, TypeVar

import structlog

from src.core.config.constants import DB_RETRY_AFTER_SECONDS, QueryKind
from src.core.exceptions import DatabaseUnavailableError
from src.core.resilience.circuit_breaker import CircuitBreaker
from src.core.resilience.connection_pool_manager import ConnectionPoolManager
from src.core.resilience.rate_limiter import RateLimiterRegistry
from src.infrastructure.cache.cache_keys import CacheTTL
from src.infrastructure.cache.cache_manager import CacheService
from src.infrastructure.cache.invalidation import CacheInvalidator, ResourceType
from src.infrastructure.monitoring.performance_monitor import QueryPerformanceMonitor

logger = structlog.get_logger(__name__)

T = TypeVar("T")
Operation = Callable[[Any], Awaitable[T]]

UNKNOWN_ENDPOINT = "unknown"


# ============================================================================
# REQUEST CONTEXT
# ============================================================================

request_endpoint_ctx: ContextVar[str | None] = ContextVar("request_endpoint", default=None)
request_identifier_ctx: ContextVar[str | None] = ContextVar("request_identifier", default=None)


def set_request_context(endpoint: str | None, identifier: str | None) -> tuple[Token, Token]:
    """Bind endpoint and caller identity for the current request."""
    return request_endpoint_ctx.set(endpoint), request_identifier_ctx.set(identifier)


def reset_request_context(tokens: tuple[Token, Token]) -> None:
    endpoint_token, identifier_token = tokens
    request_endpoint_ctx.reset(endpoint_token)
    request_identifier_ctx.reset(identifier_token)


# ============================================================================
# QUERY ROUTER
# ============================================================================


class QueryRouter:
    """
    Composition of limiter, cache, breaker, pools and monitor.

    DEPENDENCIES (all injected):
    ----------------------------
    - pools: ConnectionPoolManager (routing, retries, transactions)
    - breaker: CircuitBreaker guarding the database
    - limiters: RateLimiterRegistry (named presets)
    - cache / invalidator: optional; without them reads are never cached
    - monitor: QueryPerformanceMonitor
    """

    def __init__(
        self,
        pools: ConnectionPoolManager,
        breaker: CircuitBreaker,
        limiters: RateLimiterRegistry,
        monitor: QueryPerformanceMonitor,
        cache: CacheService | None = None,
        invalidator: CacheInvalidator | None = None,
        cache_ttl: CacheTTL | None = None,
    ):
        self._pools = pools
        self._breaker = breaker
        self._limiters = limiters
        self._monitor = monitor
        self._cache = cache
        self._invalidator = invalidator
        self._cache_ttl = cache_ttl

    # ------------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------------

    async def execute_read(
        self,
        operation: Operation,
        *,
        endpoint: str | None = None,
        identifier: str | None = None,
        limiter: str = "default",
        cache_key: str | None = None,
        ttl: int | None = None,
    ) -> T:
        """
        Run a read, served from cache when `cache_key` is given and present.

        STAGE-QR.1: Read
        """
        await self._admit(limiter, identifier)
        endpoint = self._endpoint(endpoint)

        async def run_query() -> T:
            return await self._run(
                QueryKind.READ, endpoint, lambda: self._pools.execute(QueryKind.READ, operation)
            )

        if cache_key is None or self._cache is None:
            return await run_query()

        if ttl is None and self._cache_ttl is not None:
            ttl = self._cache_ttl.for_key(cache_key)
        return await self._cache.get_or_set(cache_key, run_query, ttl)

    async def execute_write(
        self,
        operation: Operation,
        *,
        endpoint: str | None = None,
        identifier: str | None = None,
        limiter: str = "default",
        resource_type: ResourceType | str | None = None,
        resource_id: Any = None,
        invalidation_context: dict[str, Any] | None = None,
    ) -> T:
        """
        Run a write on the primary, then invalidate cached views of the resource.

        STAGE-QR.2: Write
        """
        await self._admit(limiter, identifier)
        result = await self._run(
            QueryKind.WRITE,
            self._endpoint(endpoint),
            lambda: self._pools.execute(QueryKind.WRITE, operation),
        )
        await self._invalidate(resource_type, resource_id, invalidation_context)
        return result

    async def execute_transaction(
        self,
        operation: Operation,
        *,
        endpoint: str | None = None,
        identifier: str | None = None,
        limiter: str = "default",
        resource_type: ResourceType | str | None = None,
        resource_id: Any = None,
        invalidation_context: dict[str, Any] | None = None,
    ) -> T:
        """
        Run `operation` inside BEGIN/COMMIT on the primary (ROLLBACK on error).

        STAGE-QR.3: Transaction
        """
        await self._admit(limiter, identifier)
        result = await self._run(
            QueryKind.WRITE,
            self._endpoint(endpoint),
            lambda: self._pools.transaction(operation),
        )
        await self._invalidate(resource_type, resource_id, invalidation_context)
        return result

    # ------------------------------------------------------------------------
    # Pipeline steps
    # ------------------------------------------------------------------------

    async def _admit(self, limiter_name: str, identifier: str | None) -> None:
        identifier = identifier if identifier is not None else request_identifier_ctx.get()
        if identifier is None:
            return
        await self._limiters.get(limiter_name).enforce(identifier)

    @staticmethod
    def _endpoint(endpoint: str | None) -> str:
        return endpoint or request_endpoint_ctx.get() or UNKNOWN_ENDPOINT

    def _fail_fast_if_down(self) -> None:
        health = self._pools.health
        if self._pools.is_started and not health.write and not health.read:
            raise DatabaseUnavailableError(
                "Database temporarily unavailable",
                details={"retry_after": DB_RETRY_AFTER_SECONDS, "reason": "all_pools_unhealthy"},
            )

    async def _run(self, kind: QueryKind, endpoint: str, call: Callable[[], Awaitable[T]]) -> T:
        start_time = time.perf_counter()
        try:
            self._fail_fast_if_down()
            result = await self._breaker.execute(call)
        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            self._monitor.record(endpoint, kind, duration_ms, success=False)
            logger.warning(
                "Database operation failed",
                stage="QR.ERROR",
                endpoint=endpoint,
                kind=kind.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise

        duration_ms = (time.perf_counter() - start_time) * 1000
        self._monitor.record(endpoint, kind, duration_ms, success=True)
        return result

    async def _invalidate(
        self,
        resource_type: ResourceType | str | None,
        resource_id: Any,
        context: dict[str, Any] | None,
    ) -> None:
        if resource_type is None or self._invalidator is None:
            return
        await self._invalidator.invalidate_on_mutation(resource_type, resource_id, **(context or {}))
