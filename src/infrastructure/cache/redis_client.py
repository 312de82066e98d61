"""
Redis Client

Shared store behind three components of the data-access layer:
- circuit breaker state (`circuit:{name}` strings with a TTL)
- sliding-window rate limiting (`ratelimit:{limiter}:{identifier}` sorted sets)
- the query cache (plain keys, pattern invalidation through SCAN)

Architecture:
    RedisClient (Public API)
        ├── ConnectionManager (pool + client lifecycle)
        └── OperationExecutor (the commands those components use)

Every failed command surfaces as CacheKeyError. Callers catch that one type
to degrade: a cache miss, local breaker state, or a fail-open limiter.

Author: System Architect
Date: 2025-12-13
"""

import time
from collections.abc import AsyncIterator, Awaitable
from typing import Any, TypeVar

import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import ConnectionError, RedisError, TimeoutError

from src.core.config.constants import CACHE_SCAN_BATCH_SIZE
from src.core.config.settings import Settings, get_settings
from src.core.exceptions import CacheConnectionError, CacheKeyError
from src.core.logging.logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

POOL_WARNING_UTILIZATION_PCT = 80.0


# =============================================================================
# CONNECTION MANAGEMENT
# =============================================================================


class ConnectionManager:
    """
    Owns the redis-py connection pool and client.

    Pool sizing and timeouts come from the REDIS_* settings; responses are
    decoded to str so breaker JSON and cache payloads need no decoding step.
    """

    def __init__(self, settings: Settings):
        self._config = settings.redis
        self._pool: ConnectionPool | None = None
        self._client: redis.Redis | None = None
        self._is_connected = False

    @property
    def client(self) -> redis.Redis | None:
        return self._client

    @property
    def pool(self) -> ConnectionPool | None:
        return self._pool

    @property
    def is_connected(self) -> bool:
        return self._is_connected

    async def connect(self) -> redis.Redis:
        """
        Build the pool, then prove the server answers.

        STAGE-REDIS.2: Connection establishment

        Raises:
            CacheConnectionError: If the server cannot be reached
        """
        if self._is_connected and self._client is not None:
            return self._client

        cfg = self._config
        self._pool = ConnectionPool(
            host=cfg.REDIS_HOST,
            port=cfg.REDIS_PORT,
            db=cfg.REDIS_DB,
            password=cfg.REDIS_PASSWORD,
            max_connections=cfg.REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=cfg.REDIS_SOCKET_CONNECT_TIMEOUT,
            socket_timeout=cfg.REDIS_SOCKET_TIMEOUT,
            retry_on_timeout=True,
            health_check_interval=cfg.REDIS_HEALTH_CHECK_INTERVAL,
            decode_responses=True,
        )
        self._client = redis.Redis(connection_pool=self._pool)

        try:
            await self._client.ping()
        except (ConnectionError, TimeoutError, OSError) as e:
            self._client = None
            logger.error(
                "Redis unreachable",
                stage="REDIS.2.ERROR",
                host=cfg.REDIS_HOST,
                port=cfg.REDIS_PORT,
                error=str(e),
            )
            raise CacheConnectionError(
                message=f"Failed to connect to Redis: {e}",
                details={"host": cfg.REDIS_HOST, "port": cfg.REDIS_PORT},
            ) from e

        self._is_connected = True
        logger.info(
            "Redis connected",
            stage="REDIS.2",
            host=cfg.REDIS_HOST,
            port=cfg.REDIS_PORT,
            db=cfg.REDIS_DB,
            max_connections=cfg.REDIS_MAX_CONNECTIONS,
        )
        return self._client

    async def disconnect(self) -> None:
        """
        STAGE-REDIS.3: Connection cleanup
        """
        if self._client is not None:
            await self._client.aclose()
        if self._pool is not None:
            await self._pool.disconnect()

        self._client = None
        self._pool = None
        self._is_connected = False
        logger.info("Redis disconnected", stage="REDIS.3")


# =============================================================================
# OPERATION EXECUTOR
# =============================================================================


class OperationExecutor:
    """
    The Redis commands the data-access layer issues.

    Each command goes through `_call`, which logs the failure with its
    stage tag and re-raises it as CacheKeyError carrying the key (or keys,
    or pattern) involved.
    """

    def __init__(self, redis_client: redis.Redis):
        self._redis = redis_client

    async def _call(self, command: str, awaitable: Awaitable[T], **context: Any) -> T:
        try:
            return await awaitable
        except RedisError as e:
            logger.error(f"Redis {command} failed", stage=f"REDIS.{command}", error=str(e), **context)
            raise CacheKeyError(message=f"Redis {command} failed: {e}", details=context) from e

    # -------------------------------------------------------------------------
    # Strings (cache entries, breaker state)
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        return await self._call("GET", self._redis.get(key), key=key)

    async def set(
        self, key: str, value: str, ttl: int | None = None, nx: bool = False, xx: bool = False
    ) -> bool:
        """
        SET with optional expiry. Returns False when NX/XX prevented the write.
        """
        result = await self._call(
            "SET", self._redis.set(key, value, ex=ttl, nx=nx, xx=xx), key=key
        )
        return result is not None

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self._call("DEL", self._redis.delete(*keys), keys=list(keys))

    async def scan_keys(self, pattern: str, count: int = CACHE_SCAN_BATCH_SIZE) -> AsyncIterator[str]:
        """
        Iterate keys matching a glob pattern with SCAN, never KEYS.

        STAGE-REDIS.SCAN: Cursor-based key iteration
        """
        try:
            async for key in self._redis.scan_iter(match=pattern, count=count):
                yield key
        except RedisError as e:
            logger.error("Redis SCAN failed", stage="REDIS.SCAN", pattern=pattern, error=str(e))
            raise CacheKeyError(
                message=f"Redis SCAN failed: {e}", details={"pattern": pattern}
            ) from e

    # -------------------------------------------------------------------------
    # Sorted sets (sliding-window rate limiting)
    # -------------------------------------------------------------------------

    async def zwindow_add(
        self, key: str, member: str, score: float, min_score: float, ttl: int
    ) -> tuple[int, float | None]:
        """
        Prune members scored at or below `min_score`, add `member`, refresh
        the expiry and read back the size and oldest score.

        STAGE-REDIS.WINDOW: One MULTI/EXEC round-trip

        Returns:
            (cardinality including `member`, lowest score or None)
        """

        async def run() -> list[Any]:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.zremrangebyscore(key, 0, min_score)
                pipe.zadd(key, {member: score})
                pipe.zcard(key)
                pipe.zrange(key, 0, 0, withscores=True)
                pipe.expire(key, ttl)
                return await pipe.execute()

        _, _, count, oldest, _ = await self._call("PIPELINE", run(), key=key)
        return count, float(oldest[0][1]) if oldest else None

    async def zrem(self, key: str, member: str) -> int:
        return await self._call("ZREM", self._redis.zrem(key, member), key=key)


# =============================================================================
# PUBLIC API
# =============================================================================


class RedisClient:
    """
    Async Redis client shared by the breaker store, limiter store and cache.

    Usage:
        client = RedisClient(settings)
        await client.connect()

        await client.set("circuit:database", payload, ttl=300)
        value = await client.get("circuit:database")

        await client.disconnect()
    """

    def __init__(self, settings: Settings | None = None):
        """
        STAGE-REDIS.1: Client initialization
        """
        self._settings = settings or get_settings()
        self._conn_mgr = ConnectionManager(self._settings)
        self._executor: OperationExecutor | None = None

        logger.info(
            "Redis client initialized",
            stage="REDIS.1",
            host=self._settings.redis.REDIS_HOST,
            port=self._settings.redis.REDIS_PORT,
        )

    async def connect(self) -> None:
        """
        Raises:
            CacheConnectionError: If the server cannot be reached
        """
        client = await self._conn_mgr.connect()
        self._executor = OperationExecutor(client)

    async def disconnect(self) -> None:
        await self._conn_mgr.disconnect()
        self._executor = None

    @property
    def is_connected(self) -> bool:
        return self._conn_mgr.is_connected

    async def ping(self) -> bool:
        client = self._conn_mgr.client
        if client is None or not self._conn_mgr.is_connected:
            return False
        try:
            await client.ping()
            return True
        except (ConnectionError, TimeoutError):
            return False

    def _require_executor(self) -> OperationExecutor:
        if self._executor is None:
            raise CacheConnectionError("Redis client is not connected")
        return self._executor

    # -------------------------------------------------------------------------
    # Commands
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> str | None:
        return await self._require_executor().get(key)

    async def set(
        self, key: str, value: str, ttl: int | None = None, nx: bool = False, xx: bool = False
    ) -> bool:
        return await self._require_executor().set(key, value, ttl, nx, xx)

    async def delete(self, *keys: str) -> int:
        return await self._require_executor().delete(*keys)

    def scan_keys(self, pattern: str, count: int = CACHE_SCAN_BATCH_SIZE) -> AsyncIterator[str]:
        return self._require_executor().scan_keys(pattern, count)

    async def zwindow_add(
        self, key: str, member: str, score: float, min_score: float, ttl: int
    ) -> tuple[int, float | None]:
        return await self._require_executor().zwindow_add(key, member, score, min_score, ttl)

    async def zrem(self, key: str, member: str) -> int:
        return await self._require_executor().zrem(key, member)

    # -------------------------------------------------------------------------
    # Health
    # -------------------------------------------------------------------------

    async def health_check(self) -> dict[str, Any]:
        """
        Ping latency plus pool utilization.

        STAGE-REDIS.HEALTH: Redis health check
        """
        cfg = self._settings.redis
        health: dict[str, Any] = {
            "status": "healthy",
            "connected": self._conn_mgr.is_connected,
            "host": cfg.REDIS_HOST,
            "port": cfg.REDIS_PORT,
            "ping_latency_ms": None,
            "pool_max": cfg.REDIS_MAX_CONNECTIONS,
            "pool_in_use": 0,
            "pool_utilization_pct": 0.0,
        }

        client = self._conn_mgr.client
        if client is None:
            health["status"] = "unhealthy"
            health["error"] = "Client not connected"
            return health

        start = time.perf_counter()
        try:
            await client.ping()
        except RedisError as e:
            health["status"] = "unhealthy"
            health["error"] = str(e)
            return health
        health["ping_latency_ms"] = round((time.perf_counter() - start) * 1000, 2)

        pool = self._conn_mgr.pool
        in_use = len(getattr(pool, "_in_use_connections", ()) or ())
        utilization = 100.0 * in_use / cfg.REDIS_MAX_CONNECTIONS if cfg.REDIS_MAX_CONNECTIONS else 0.0
        health["pool_in_use"] = in_use
        health["pool_utilization_pct"] = round(utilization, 1)
        if utilization > POOL_WARNING_UTILIZATION_PCT:
            logger.warning(
                "Redis pool utilization high",
                stage="REDIS.HEALTH",
                pool_utilization=utilization,
                max_connections=cfg.REDIS_MAX_CONNECTIONS,
            )
        return health
