#!/usr/bin/env python3
"""
Health Checker Module

This module provides health checks for the data-access components:
- Database pools (write / read)
- Redis connectivity
- Cache backend status
- Circuit breaker states

Status rules:
- Write pool down → unhealthy (no writes, no fallback for reads)
- Anything else failing → degraded (the layer still serves traffic)

Author: Senior Solution Architect
Date: 2025-12-05
"""

import asyncio
from datetime import datetime, timezone
from typing import Any

from src.core.config.constants import CircuitState, HealthStatus
from src.core.config.settings import Settings, get_settings
from src.core.logging.logger import get_logger

logger = get_logger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class HealthChecker:
    """
    Health checker for all data-access components.

    STAGE-H: Health check orchestration

    Usage:
        checker = HealthChecker(settings, pool_manager, redis_client, cache, breakers)

        # Quick health check
        status = await checker.check_health()

        # Detailed health report
        report = await checker.detailed_health_report()
    """

    def __init__(
        self,
        settings: Settings | None = None,
        pool_manager=None,
        redis_client=None,
        cache=None,
        breakers=None,
    ):
        """Initialize health checker."""
        self.settings = settings or get_settings()
        self._pools = pool_manager
        self._redis = redis_client
        self._cache = cache
        self._breakers = breakers

        logger.info("Health checker initialized", stage="H.0")

    def database_health(self) -> dict[str, Any]:
        """Last-known pool health, `{write, read, readWriteSplitEnabled}`."""
        if self._pools is None:
            return {"write": False, "read": False, "readWriteSplitEnabled": False}
        health = self._pools.health
        return {
            "write": health.write,
            "read": health.read,
            "readWriteSplitEnabled": health.read_write_split_enabled,
        }

    async def check_health(self) -> dict[str, Any]:
        """
        Quick health check.

        STAGE-H.1: Quick health status

        Returns:
            Dict with status and per-component summary
        """
        database = self.database_health()
        redis_healthy = await self._check_redis()

        components = {
            "database_write": "healthy" if database["write"] else "unhealthy",
            "database_read": "healthy" if database["read"] else "unhealthy",
            "redis": "healthy" if redis_healthy else "unavailable",
        }

        if not database["write"]:
            status = HealthStatus.UNHEALTHY
        elif not database["read"] or (self._redis is not None and not redis_healthy):
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.HEALTHY

        return {
            "status": status.value,
            "timestamp": _utc_now(),
            "version": self.settings.app.APP_VERSION,
            "components": components,
        }

    async def detailed_health_report(self) -> dict[str, Any]:
        """
        Detailed health report for all components.

        STAGE-H.2: Detailed health report

        Returns:
            Dict with comprehensive health information
        """
        report: dict[str, Any] = {
            "status": HealthStatus.HEALTHY.value,
            "timestamp": _utc_now(),
            "version": self.settings.app.APP_VERSION,
            "environment": self.settings.app.ENVIRONMENT,
            "components": {},
        }

        issues = []
        critical = False

        # Check database pools
        database = self.database_health()
        report["components"]["database"] = {
            **database,
            "pools": self._pools.get_stats()["pools"] if self._pools is not None else {},
        }
        if not database["write"]:
            issues.append("database:write")
            critical = True
        if not database["read"]:
            issues.append("database:read")

        # Shared store and cache report their own health
        for name, component in (("redis", self._redis), ("cache", self._cache)):
            component_health = await self._component_health(component)
            report["components"][name] = component_health
            if component_health["status"] not in ("healthy", "not_configured"):
                issues.append(name)

        # Check circuit breakers
        if self._breakers is not None:
            breaker_metrics = await self._breakers.get_all_metrics()
            report["components"]["circuit_breakers"] = breaker_metrics
            for name, metrics in breaker_metrics.items():
                if metrics.get("state") == CircuitState.OPEN.value:
                    issues.append(f"circuit_breaker:{name}")

        # Determine overall status
        if critical:
            report["status"] = HealthStatus.UNHEALTHY.value
            report["failed_components"] = issues
        elif issues:
            report["status"] = HealthStatus.DEGRADED.value
            report["degraded_components"] = issues

        if issues:
            logger.warning(
                "Health report has issues",
                stage="H.2",
                status=report["status"],
                issues=issues,
            )
        return report

    @staticmethod
    async def _component_health(component) -> dict[str, Any]:
        if component is None:
            return {"status": "not_configured"}
        try:
            return await component.health_check()
        except Exception as e:
            return {"status": "error", "error": str(e)}

    async def _check_redis(self) -> bool:
        """Check Redis connectivity."""
        if not self._redis:
            return False

        try:
            # Add timeout to prevent hanging
            return await asyncio.wait_for(self._redis.ping(), timeout=2.0)
        except Exception:
            return False

    async def liveness_check(self) -> dict[str, Any]:
        """
        Kubernetes liveness probe.

        Returns basic status for liveness check.
        """
        return {
            "status": "alive",
            "timestamp": _utc_now(),
            "version": self.settings.app.APP_VERSION,
        }

    async def readiness_check(self) -> dict[str, Any]:
        """
        Kubernetes readiness probe.

        Ready while the write pool is reachable; reads can always fall back
        to it.
        """
        database = self.database_health()
        result = {
            "status": "ready" if database["write"] else "not_ready",
            "timestamp": _utc_now(),
            "version": self.settings.app.APP_VERSION,
        }
        if not database["write"]:
            result["reason"] = "Write database not available"
        return result
