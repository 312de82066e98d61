"""
Health Check Routes
===================

KUBERNETES HEALTH PROBES:
-------------------------
1. LIVENESS (/health/live): "Is the process running?" Never touches a
   dependency, so a database outage does not restart healthy pods.
2. READINESS (/health/ready): "Can this instance serve traffic?" Ready
   while the write pool is reachable (reads can always fall back to it).

/health summarizes every component; /health/database returns the pool
health record exactly as the router sees it.
"""

from fastapi import APIRouter, Response, status

from src.application.api.dependencies import HealthCheckerDep
from src.application.api.models.admin import DatabaseHealthResponse, HealthResponse
from src.core.config.constants import HealthStatus
from src.core.logging.logger import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", response_model=HealthResponse)
async def health_check(checker: HealthCheckerDep, response: Response):
    """
    Overall health: healthy, degraded (read replica, Redis or a breaker
    impaired) or unhealthy (write pool down, answered with 503).
    """
    result = await checker.check_health()
    if result["status"] == HealthStatus.UNHEALTHY.value:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return HealthResponse(**result)


@router.get("/database", response_model=DatabaseHealthResponse)
async def database_health(checker: HealthCheckerDep):
    """`{write, read, readWriteSplitEnabled}` from the last health probe."""
    return DatabaseHealthResponse(**checker.database_health())


@router.get("/detailed")
async def detailed_health(checker: HealthCheckerDep, response: Response):
    """Per-component report: pools, Redis, cache backend, breakers."""
    report = await checker.detailed_health_report()
    if report["status"] == HealthStatus.UNHEALTHY.value:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return report


@router.get("/live")
async def liveness_probe(checker: HealthCheckerDep):
    return await checker.liveness_check()


@router.get("/ready")
async def readiness_probe(checker: HealthCheckerDep, response: Response):
    result = await checker.readiness_check()
    if result["status"] != "ready":
        logger.warning("Readiness check failed", stage="H.3", reason=result.get("reason"))
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return result
