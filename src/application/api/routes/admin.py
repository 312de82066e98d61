"""
Admin Routes
============

Operations surface for the data-access layer:

    GET  /admin/performance                  per-endpoint metrics + recommendations
    POST /admin/performance/reset            clear performance totals
    GET  /admin/pools                        pool sizes and health
    GET  /admin/circuit-breakers             breaker states
    POST /admin/circuit-breakers/{name}/reset
    GET  /admin/rate-limits                  limiter presets and tracked identifiers
    GET  /admin/cache/stats                  hit rates per key prefix
    POST /admin/cache/invalidate             manual invalidation by resource type
    GET  /admin/metrics                      Prometheus exposition

SECURITY NOTE:
--------------
`verify_admin_access` is the single hook for admin authentication. It is a
no-op here; deployments put these routes behind an authenticating proxy or
replace the dependency.
"""

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status

from src.application.api.dependencies import (
    BreakersDep,
    CacheDep,
    DataAccessDep,
    InvalidatorDep,
    LimitersDep,
    MonitorDep,
    PoolManagerDep,
)
from src.application.api.models.admin import (
    CacheInvalidationRequest,
    CacheInvalidationResponse,
    DatabaseHealthResponse,
    EndpointMetrics,
    LoadReduction,
    MessageResponse,
    PerformanceReport,
    PerformanceSummary,
)
from src.core.logging.logger import get_logger
from src.infrastructure.cache.invalidation import parse_resource_type
from src.infrastructure.monitoring.metrics_collector import get_metrics_collector
from src.infrastructure.monitoring.performance_monitor import (
    generate_recommendations,
    load_reduction,
    performance_overview,
)

logger = get_logger(__name__)

router = APIRouter(prefix="/admin", tags=["Admin"])


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


async def verify_admin_access() -> None:
    """Admin authentication hook (no-op)."""
    pass


# ============================================================================
# PERFORMANCE ENDPOINTS
# ============================================================================


@router.get(
    "/performance",
    response_model=PerformanceReport,
    dependencies=[Depends(verify_admin_access)],
)
async def get_performance(
    context: DataAccessDep,
    endpoint: str | None = Query(None, description="Limit the report to one endpoint"),
):
    """
    Per-endpoint query metrics, load taken off the write pool, and
    recommendations for the current metrics and pool health.
    """
    monitor = context.monitor
    health = context.pools.health

    if endpoint is not None:
        metric = monitor.summary(endpoint)
        metrics = [metric] if metric is not None else []
    else:
        metrics = monitor.get_all_metrics()

    return PerformanceReport(
        health=DatabaseHealthResponse(
            write=health.write,
            read=health.read,
            read_write_split_enabled=health.read_write_split_enabled,
        ),
        load_reduction=LoadReduction(**load_reduction(metrics)),
        by_endpoint=[EndpointMetrics(**m.to_dict()) for m in metrics],
        summary=PerformanceSummary(**performance_overview(metrics)),
        recommendations=generate_recommendations(metrics, health, context.thresholds),
    )


@router.post(
    "/performance/reset",
    response_model=MessageResponse,
    dependencies=[Depends(verify_admin_access)],
)
async def reset_performance(monitor: MonitorDep):
    """Clear all accumulated performance metrics. Irreversible."""
    monitor.reset()
    return MessageResponse(message="Performance metrics reset successfully", timestamp=_utc_now())


# ============================================================================
# POOL / BREAKER / LIMITER ENDPOINTS
# ============================================================================


@router.get("/pools", dependencies=[Depends(verify_admin_access)])
async def get_pools(pools: PoolManagerDep):
    return pools.get_stats()


@router.get("/circuit-breakers", dependencies=[Depends(verify_admin_access)])
async def get_circuit_breakers(breakers: BreakersDep):
    return {
        "backend": breakers.backend,
        "circuit_breakers": await breakers.get_all_metrics(),
    }


@router.post("/circuit-breakers/{name}/reset", dependencies=[Depends(verify_admin_access)])
async def reset_circuit_breaker(name: str, breakers: BreakersDep):
    """Force a breaker CLOSED with zeroed counters."""
    breaker = breakers.get(name)
    if breaker is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Unknown circuit breaker '{name}'",
        )
    await breaker.reset()
    logger.warning("Circuit breaker reset by admin", stage="CB.ADMIN", breaker=name)
    return await breaker.get_metrics()


@router.get("/rate-limits", dependencies=[Depends(verify_admin_access)])
async def get_rate_limits(limiters: LimitersDep):
    return {"limiters": limiters.stats()}


# ============================================================================
# CACHE ENDPOINTS
# ============================================================================


@router.get("/cache/stats", dependencies=[Depends(verify_admin_access)])
async def get_cache_stats(cache: CacheDep):
    return cache.stats()


@router.post(
    "/cache/invalidate",
    response_model=CacheInvalidationResponse,
    dependencies=[Depends(verify_admin_access)],
)
async def invalidate_cache(body: CacheInvalidationRequest, invalidator: InvalidatorDep):
    """
    Invalidate by resource type.

    An unknown type is rejected with 400 (InvalidResourceTypeError handler).
    """
    resource_type = parse_resource_type(body.type)
    deleted = await invalidator.invalidate(resource_type, body.id, body.category)
    return CacheInvalidationResponse(
        type=resource_type,
        deleted=deleted,
        timestamp=_utc_now(),
    )


# ============================================================================
# METRICS ENDPOINT
# ============================================================================


@router.get("/metrics")
async def get_prometheus_metrics():
    """Expose metrics in Prometheus text format for scraping."""
    metrics_collector = get_metrics_collector()
    return Response(
        content=metrics_collector.get_prometheus_metrics(),
        media_type=metrics_collector.get_content_type(),
    )
