"""
Data Access Context

One object owning every data-access component for the life of the process.
Built once at startup, handed to request handlers through FastAPI
dependencies, closed once at shutdown.

    context = DataAccessContext.create(settings)
    await context.start()
    ...
    await context.close()

Startup order: Redis → pools. Shutdown runs in reverse. When Redis is
enabled but unreachable, the components that would share state through it
(breaker store, limiter store, cache) are rebuilt on in-memory backends.

Author: System Architect
Date: 2025-12-14
"""

from typing import Any

import structlog

from src.core.config.settings import Settings, get_settings
from src.core.exceptions import CacheConnectionError
from src.core.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    is_outage_error,
)
from src.core.resilience.connection_pool_manager import ConnectionPoolManager, PoolFactory
from src.core.resilience.rate_limiter import RateLimiterRegistry
from src.application.services.query_router import QueryRouter
from src.infrastructure.cache.cache_keys import CacheTTL
from src.infrastructure.cache.cache_manager import CacheService
from src.infrastructure.cache.invalidation import CacheInvalidator
from src.infrastructure.cache.redis_client import RedisClient
from src.infrastructure.monitoring.health_checker import HealthChecker
from src.infrastructure.monitoring.performance_monitor import (
    QueryPerformanceMonitor,
    RecommendationThresholds,
)

logger = structlog.get_logger(__name__)

DATABASE_BREAKER = "database"


class DataAccessContext:
    """Holds the pool manager, breakers, limiters, cache and router."""

    def __init__(
        self,
        settings: Settings,
        pools: ConnectionPoolManager,
        redis_client: Any = None,
    ):
        self.settings = settings
        self.pools = pools
        self.redis_client = redis_client
        self.monitor = QueryPerformanceMonitor.from_settings(settings)
        self.thresholds = RecommendationThresholds.from_settings(settings)
        self.cache_ttl = CacheTTL(settings)
        self._started = False
        self._wire(redis_client)

    @classmethod
    def create(
        cls,
        settings: Settings | None = None,
        pool_factory: PoolFactory | None = None,
        redis_client: Any = None,
    ) -> "DataAccessContext":
        settings = settings or get_settings()
        if redis_client is None and settings.redis.REDIS_ENABLED:
            redis_client = RedisClient(settings)
        pools = ConnectionPoolManager.from_settings(settings, pool_factory=pool_factory)
        return cls(settings, pools, redis_client)

    def _wire(self, redis_client: Any) -> None:
        """Build every Redis-backed component against `redis_client` (None = in-memory)."""
        self.breakers = CircuitBreakerRegistry.from_settings(self.settings, redis_client)
        self.database_breaker: CircuitBreaker = self.breakers.get_breaker(
            DATABASE_BREAKER, is_failure=is_outage_error
        )
        self.limiters = RateLimiterRegistry.from_settings(self.settings, redis_client)
        self.cache = CacheService.from_settings(self.settings, redis_client)
        self.invalidator = CacheInvalidator(self.cache)
        self.router = QueryRouter(
            pools=self.pools,
            breaker=self.database_breaker,
            limiters=self.limiters,
            monitor=self.monitor,
            cache=self.cache,
            invalidator=self.invalidator,
            cache_ttl=self.cache_ttl,
        )
        self.health_checker = HealthChecker(
            self.settings,
            pool_manager=self.pools,
            redis_client=redis_client,
            cache=self.cache,
            breakers=self.breakers,
        )

    @property
    def is_started(self) -> bool:
        return self._started

    async def start(self, run_health_loop: bool = True) -> None:
        """
        Connect Redis and open the pools.

        STAGE-APP.1: Context startup
        """
        if self._started:
            return

        if self.redis_client is not None:
            try:
                await self.redis_client.connect()
            except CacheConnectionError as e:
                logger.warning(
                    "Redis unreachable, using in-memory breaker, limiter and cache backends",
                    stage="APP.1.FALLBACK",
                    error=str(e),
                )
                self.redis_client = None
                self._wire(None)

        await self.pools.start(run_health_loop=run_health_loop)
        self._started = True

        logger.info(
            "Data access context started",
            stage="APP.1",
            redis=self.redis_client is not None,
            cache_backend=self.cache.backend.name,
            breaker_backend=self.breakers.backend,
            read_write_split_enabled=self.pools.read_write_split_enabled,
        )

    async def close(self) -> None:
        """
        Close pools, then Redis.

        STAGE-APP.2: Context shutdown
        """
        await self.pools.close()
        if self.redis_client is not None:
            await self.redis_client.disconnect()
        self._started = False
        logger.info("Data access context closed", stage="APP.2")
