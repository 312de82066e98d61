#!/usr/bin/env python3
"""
Query Cache Service

Architecture:
    CacheService (Public API)
        ├── CacheBackend (storage)
        │   ├── RedisCacheBackend (shared, SET EX / SCAN)
        │   └── InMemoryCacheBackend (LRU with per-entry expiry)
        └── CacheObserver (per-prefix hit/miss stats & metrics)

Failure Policy:
    The cache never fails a request. A backend error on read is a miss, on
    write or delete it is reported as "nothing stored / nothing deleted".

Author: Refactored for clarity and maintainability
Date: 2025-12-13
"""

import fnmatch
import inspect
import time
from collections import OrderedDict
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Protocol

import orjson

from src.core.config.constants import CACHE_DEFAULT_TTL, CACHE_SCAN_BATCH_SIZE
from src.core.config.settings import Settings, get_settings
from src.core.logging.logger import get_logger, log_stage
from src.infrastructure.cache.cache_keys import key_prefix
from src.infrastructure.cache.redis_client import RedisClient
from src.infrastructure.monitoring.metrics_collector import (
    MetricsCollector,
    get_metrics_collector,
)

logger = get_logger(__name__)


# =============================================================================
# LAYER 1: STORAGE IMPLEMENTATIONS
# Pure storage interfaces - no business logic
# =============================================================================


class CacheBackend(Protocol):
    """Raw string storage with TTL and glob deletes."""

    name: str

    async def get(self, key: str) -> str | None:
        ...

    async def set(self, key: str, value: str, ttl: int) -> None:
        ...

    async def delete(self, key: str) -> bool:
        ...

    async def delete_pattern(self, pattern: str) -> int:
        ...

    async def health_check(self) -> dict[str, Any]:
        ...


@dataclass
class CacheEntry:
    key: str
    value: str
    expires_at: float | None


class InMemoryCacheBackend:
    """
    In-memory LRU cache storage with per-entry expiry.

    STAGE-CACHE.L1: In-memory cache

    This is a per-instance cache, not shared across workers.
    For distributed caching, use RedisCacheBackend.

    Implementation Details:
    - Uses OrderedDict for O(1) access and LRU ordering
    - Expired entries are dropped lazily on access
    - Patterns are matched with fnmatch (same glob syntax as Redis MATCH)
    - No method awaits, so each call is atomic on the event loop
    """

    name = "memory"

    def __init__(self, max_size: int = 1000, clock: Callable[[], float] = time.time):
        self._max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

    async def get(self, key: str) -> str | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and entry.expires_at <= self._clock():
            del self._entries[key]
            return None
        # Move to end (mark as recently used)
        self._entries.move_to_end(key)
        return entry.value

    async def set(self, key: str, value: str, ttl: int) -> None:
        expires_at = self._clock() + ttl if ttl and ttl > 0 else None
        if key in self._entries:
            self._entries.move_to_end(key)
        self._entries[key] = CacheEntry(key=key, value=value, expires_at=expires_at)
        while len(self._entries) > self._max_size:
            self._entries.popitem(last=False)

    async def delete(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    async def delete_pattern(self, pattern: str) -> int:
        matched = [key for key in self._entries if fnmatch.fnmatchcase(key, pattern)]
        for key in matched:
            del self._entries[key]
        return len(matched)

    async def clear(self) -> None:
        self._entries.clear()

    def get_size(self) -> int:
        return len(self._entries)

    def get_max_size(self) -> int:
        return self._max_size

    async def health_check(self) -> dict[str, Any]:
        return {"status": "healthy", "size": self.get_size(), "max_size": self._max_size}


class RedisCacheBackend:
    """
    Redis distributed cache storage.

    STAGE-CACHE.L2: Redis cache

    Pattern deletes walk the keyspace with SCAN and delete in batches, so a
    broad pattern never blocks Redis the way KEYS would.
    """

    name = "redis"

    def __init__(self, redis_client: RedisClient, batch_size: int = CACHE_SCAN_BATCH_SIZE):
        self._redis = redis_client
        self._batch_size = batch_size

    async def get(self, key: str) -> str | None:
        return await self._redis.get(key)

    async def set(self, key: str, value: str, ttl: int) -> None:
        await self._redis.set(key, value, ttl=ttl if ttl and ttl > 0 else None)

    async def delete(self, key: str) -> bool:
        return await self._redis.delete(key) > 0

    async def delete_pattern(self, pattern: str) -> int:
        deleted = 0
        batch: list[str] = []
        async for key in self._redis.scan_keys(pattern, count=self._batch_size):
            batch.append(key)
            if len(batch) >= self._batch_size:
                deleted += await self._redis.delete(*batch)
                batch = []
        if batch:
            deleted += await self._redis.delete(*batch)
        return deleted

    async def health_check(self) -> dict[str, Any]:
        return await self._redis.health_check()


# =============================================================================
# LAYER 2: OBSERVABILITY
# Per-prefix statistics and Prometheus metrics
# =============================================================================


class CacheObserver:
    """
    Tracks cache performance metrics and logs operations.

    Hits and misses are grouped by key prefix (`products`, `bundles`, ...)
    so the admin surface shows which content benefits from caching.
    """

    def __init__(self, metrics: MetricsCollector | None = None):
        self._metrics = metrics or get_metrics_collector()
        self._hits: dict[str, int] = {}
        self._misses: dict[str, int] = {}
        self._errors = 0

    def record_hit(self, key: str) -> None:
        prefix = key_prefix(key)
        self._hits[prefix] = self._hits.get(prefix, 0) + 1
        self._metrics.record_cache_hit(prefix)
        log_stage(logger, "CACHE.1", "Cache hit", level="debug", cache_key=key)

    def record_miss(self, key: str) -> None:
        prefix = key_prefix(key)
        self._misses[prefix] = self._misses.get(prefix, 0) + 1
        self._metrics.record_cache_miss(prefix)
        log_stage(logger, "CACHE.1", "Cache miss", level="debug", cache_key=key)

    def record_error(self, operation: str, target: str, error: Exception) -> None:
        self._errors += 1
        self._metrics.record_cache_error(operation)
        logger.warning(
            f"Cache {operation} failed, degrading",
            stage="CACHE.FALLBACK",
            operation=operation,
            target=target,
            error=str(error),
        )

    def reset(self) -> None:
        self._hits.clear()
        self._misses.clear()
        self._errors = 0

    def get_stats(self) -> dict[str, Any]:
        hits = sum(self._hits.values())
        misses = sum(self._misses.values())
        total = hits + misses

        prefixes = {}
        for prefix in sorted(set(self._hits) | set(self._misses)):
            prefix_hits = self._hits.get(prefix, 0)
            prefix_total = prefix_hits + self._misses.get(prefix, 0)
            prefixes[f"{prefix}:*"] = {
                "hits": prefix_hits,
                "misses": self._misses.get(prefix, 0),
                "hit_rate": round(prefix_hits / prefix_total * 100, 2) if prefix_total else 0.0,
            }

        return {
            "hits": hits,
            "misses": misses,
            "total_requests": total,
            "hit_rate": round(hits / total * 100, 2) if total else 0.0,
            "errors": self._errors,
            "by_prefix": prefixes,
        }


# =============================================================================
# LAYER 3: PUBLIC API
# =============================================================================


def _json_default(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (set, frozenset)):
        return list(value)
    raise TypeError(f"Type is not JSON serializable: {type(value).__name__}")


class CacheService:
    """
    Key/value cache with TTL and pattern invalidation.

    Values are serialized with orjson. None is never stored, so a None
    result from `get` always means "miss".

    Usage:
        cache = CacheService(InMemoryCacheBackend())

        await cache.set(CacheKeys.product(42), product, ttl=300)
        product = await cache.get(CacheKeys.product(42))

        rows = await cache.get_or_set(key, load_rows, ttl=600)
        removed = await cache.delete_pattern("products:*")
    """

    def __init__(
        self,
        backend: CacheBackend,
        enabled: bool = True,
        default_ttl: int = CACHE_DEFAULT_TTL,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize cache service.

        STAGE-CACHE.0: Cache service initialization
        """
        self._backend = backend
        self._enabled = enabled
        self._default_ttl = default_ttl
        self._observer = CacheObserver(metrics)

        logger.info(
            "Cache service initialized",
            stage="CACHE.0",
            backend=backend.name,
            caching_enabled=enabled,
            default_ttl=default_ttl,
        )

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        redis_client: RedisClient | None = None,
        clock: Callable[[], float] = time.time,
    ) -> "CacheService":
        settings = settings or get_settings()
        cache = settings.cache
        if cache.CACHE_BACKEND == "redis" and redis_client is not None:
            backend: CacheBackend = RedisCacheBackend(redis_client)
        else:
            if cache.CACHE_BACKEND == "redis":
                logger.warning(
                    "Redis cache backend requested without a Redis client, using in-memory cache",
                    stage="CACHE.0.FALLBACK",
                )
            backend = InMemoryCacheBackend(max_size=cache.CACHE_L1_MAX_SIZE, clock=clock)
        return cls(backend, enabled=cache.CACHE_ENABLED, default_ttl=cache.CACHE_DEFAULT_TTL)

    @property
    def backend(self) -> CacheBackend:
        return self._backend

    @property
    def enabled(self) -> bool:
        return self._enabled

    # -------------------------------------------------------------------------
    # Core Cache Operations
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Any | None:
        """
        Get a value, or None on miss.

        STAGE-CACHE.1: Lookup
        """
        if not self._enabled:
            return None

        try:
            raw = await self._backend.get(key)
        except Exception as e:
            self._observer.record_error("get", key, e)
            return None

        if raw is None:
            self._observer.record_miss(key)
            return None

        try:
            value = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            self._observer.record_error("decode", key, e)
            return None

        self._observer.record_hit(key)
        return value

    async def set(self, key: str, value: Any, ttl: int | None = None) -> bool:
        """
        Store a value. Returns False when nothing was stored.

        STAGE-CACHE.2: Population
        """
        if not self._enabled or value is None:
            return False

        try:
            payload = orjson.dumps(value, default=_json_default).decode("utf-8")
        except TypeError as e:
            self._observer.record_error("encode", key, e)
            return False

        try:
            await self._backend.set(key, payload, ttl or self._default_ttl)
        except Exception as e:
            self._observer.record_error("set", key, e)
            return False

        log_stage(logger, "CACHE.2", "Cache set", level="debug", cache_key=key)
        return True

    async def delete(self, key: str) -> bool:
        """
        Delete one key.

        STAGE-CACHE.3: Invalidation
        """
        try:
            deleted = await self._backend.delete(key)
        except Exception as e:
            self._observer.record_error("delete", key, e)
            return False
        log_stage(logger, "CACHE.3", "Cache key deleted", level="debug", cache_key=key)
        return deleted

    async def delete_pattern(self, pattern: str) -> int:
        """
        Delete every key matching a glob pattern. Returns the number removed.

        STAGE-CACHE.3: Invalidation
        """
        try:
            deleted = await self._backend.delete_pattern(pattern)
        except Exception as e:
            self._observer.record_error("delete_pattern", pattern, e)
            return 0
        log_stage(logger, "CACHE.3", "Cache pattern deleted", pattern=pattern, deleted=deleted)
        return deleted

    async def get_or_set(
        self,
        key: str,
        compute_fn: Callable[[], Awaitable[Any] | Any],
        ttl: int | None = None,
    ) -> Any:
        """
        Get from cache or compute and cache the result (cache-aside pattern).

        STAGE-CACHE.4: Read-through

        Concurrent callers missing on the same key may both compute, so
        `compute_fn` must be free of side effects beyond its return value.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached

        value = compute_fn()
        if inspect.isawaitable(value):
            value = await value

        await self.set(key, value, ttl)
        return value

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    def reset_stats(self) -> None:
        self._observer.reset()

    def stats(self) -> dict[str, Any]:
        """
        Get cache performance statistics.

        Returns:
            Dict with hit rates overall and per key prefix
        """
        stats = {
            **self._observer.get_stats(),
            "backend": self._backend.name,
            "caching_enabled": self._enabled,
            "default_ttl": self._default_ttl,
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
        }
        if isinstance(self._backend, InMemoryCacheBackend):
            stats["size"] = self._backend.get_size()
            stats["max_size"] = self._backend.get_max_size()
        return stats

    async def health_check(self) -> dict[str, Any]:
        """
        Perform health check on the cache backend.

        Returns:
            Dict with overall status and backend detail
        """
        health: dict[str, Any] = {
            "status": "healthy",
            "caching_enabled": self._enabled,
            "backend": self._backend.name,
        }
        try:
            detail = await self._backend.health_check()
        except Exception as e:
            health["status"] = "degraded"
            health["detail"] = {"status": "error", "error": str(e)}
            return health

        health["detail"] = detail
        if detail.get("status") != "healthy":
            health["status"] = "degraded"
        return health
