"""
FastAPI Dependency Injection Module
===================================

The DataAccessContext is built once in the application lifespan and stored
on `app.state.data_access`. The providers below hand its parts to route
handlers, so handlers never reach for module-level singletons:

    @router.get("/products/{product_id}")
    async def get_product(product_id: int, router: QueryRouterDep):
        return await router.execute_read(
            lambda conn: conn.fetchrow("SELECT * FROM products WHERE id = $1", product_id),
            cache_key=CacheKeys.product(product_id),
        )

Tests replace the whole context by assigning `app.state.data_access`
before issuing requests.
"""

from typing import Annotated

from fastapi import Depends, Request

from src.application.context import DataAccessContext
from src.application.services.query_router import QueryRouter
from src.core.resilience.circuit_breaker import CircuitBreakerRegistry
from src.core.resilience.connection_pool_manager import ConnectionPoolManager
from src.core.resilience.rate_limiter import RateLimiterRegistry
from src.infrastructure.cache.cache_manager import CacheService
from src.infrastructure.cache.invalidation import CacheInvalidator
from src.infrastructure.monitoring.health_checker import HealthChecker
from src.infrastructure.monitoring.performance_monitor import QueryPerformanceMonitor

# ============================================================================
# DEPENDENCY FUNCTIONS
# ============================================================================


def get_data_access(request: Request) -> DataAccessContext:
    """
    Retrieve the DataAccessContext from application state.

    Raises:
        RuntimeError: If the lifespan startup did not run
    """
    context = getattr(request.app.state, "data_access", None)
    if context is None:
        raise RuntimeError(
            "DataAccessContext not initialized in app.state. "
            "This indicates the application lifespan startup didn't complete properly."
        )
    return context


def get_query_router(context: Annotated[DataAccessContext, Depends(get_data_access)]) -> QueryRouter:
    return context.router


def get_pool_manager(context: Annotated[DataAccessContext, Depends(get_data_access)]) -> ConnectionPoolManager:
    return context.pools


def get_cache(context: Annotated[DataAccessContext, Depends(get_data_access)]) -> CacheService:
    return context.cache


def get_invalidator(context: Annotated[DataAccessContext, Depends(get_data_access)]) -> CacheInvalidator:
    return context.invalidator


def get_breakers(context: Annotated[DataAccessContext, Depends(get_data_access)]) -> CircuitBreakerRegistry:
    return context.breakers


def get_limiters(context: Annotated[DataAccessContext, Depends(get_data_access)]) -> RateLimiterRegistry:
    return context.limiters


def get_monitor(context: Annotated[DataAccessContext, Depends(get_data_access)]) -> QueryPerformanceMonitor:
    return context.monitor


def get_health_checker(context: Annotated[DataAccessContext, Depends(get_data_access)]) -> HealthChecker:
    return context.health_checker


# ============================================================================
# TYPE ALIASES FOR CLEANER ROUTE SIGNATURES
# ============================================================================

DataAccessDep = Annotated[DataAccessContext, Depends(get_data_access)]
QueryRouterDep = Annotated[QueryRouter, Depends(get_query_router)]
PoolManagerDep = Annotated[ConnectionPoolManager, Depends(get_pool_manager)]
CacheDep = Annotated[CacheService, Depends(get_cache)]
InvalidatorDep = Annotated[CacheInvalidator, Depends(get_invalidator)]
BreakersDep = Annotated[CircuitBreakerRegistry, Depends(get_breakers)]
LimitersDep = Annotated[RateLimiterRegistry, Depends(get_limiters)]
MonitorDep = Annotated[QueryPerformanceMonitor, Depends(get_monitor)]
HealthCheckerDep = Annotated[HealthChecker, Depends(get_health_checker)]
