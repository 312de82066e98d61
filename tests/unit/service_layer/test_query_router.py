"""
Unit Tests for QueryRouter

Tests the read/write pipeline: rate limiting, cache-aside reads, cache
invalidation after writes, circuit breaking, fail-fast when both pools are
down, and performance recording.
"""

import asyncpg
import pytest

from src.core.exceptions import (
    CircuitBreakerOpenError,
    DatabaseUnavailableError,
    RateLimitExceededError,
)
from src.application.services.query_router import (
    QueryRouter,
    request_endpoint_ctx,
    reset_request_context,
    set_request_context,
)
from src.core.resilience.circuit_breaker import CircuitBreaker, is_outage_error
from src.core.resilience.rate_limiter import RateLimiterRegistry
from src.infrastructure.cache.cache_keys import CacheKeys, CacheTTL
from src.infrastructure.cache.cache_manager import CacheService, InMemoryCacheBackend
from src.infrastructure.cache.invalidation import CacheInvalidator
from src.infrastructure.monitoring.performance_monitor import QueryPerformanceMonitor
from tests.test_fixtures import build_settings


async def fetch_product(connection):
    return await connection.fetchrow("SELECT * FROM products WHERE id = $1", 42)


async def update_product(connection):
    return await connection.execute("UPDATE products SET price = 10 WHERE id = 42")


@pytest.fixture
def cache(fake_clock):
    return CacheService(InMemoryCacheBackend(clock=fake_clock))


@pytest.fixture
def monitor():
    return QueryPerformanceMonitor(slow_query_ms=1000)


@pytest.fixture
def breaker(fake_clock):
    return CircuitBreaker("database", failure_threshold=2, reset_timeout=30, clock=fake_clock, is_failure=is_outage_error)


@pytest.fixture
def router(pool_manager, breaker, monitor, cache, fake_clock):
    settings = build_settings()
    return QueryRouter(
        pools=pool_manager,
        breaker=breaker,
        limiters=RateLimiterRegistry.from_settings(settings, clock=fake_clock),
        monitor=monitor,
        cache=cache,
        invalidator=CacheInvalidator(cache),
        cache_ttl=CacheTTL(settings),
    )


@pytest.mark.unit
class TestReads:
    async def test_read_uses_read_pool(self, router, read_pool, write_pool):
        read_pool.data["42"] = {"id": 42, "name": "Navy Suit"}
        write_acquires = write_pool.acquired

        product = await router.execute_read(fetch_product, endpoint="/api/products/42")

        assert product == {"id": 42, "name": "Navy Suit"}
        assert write_pool.acquired == write_acquires

    async def test_cache_hit_skips_database(self, router, read_pool, cache):
        read_pool.data["42"] = {"id": 42}
        key = CacheKeys.product(42)

        await router.execute_read(fetch_product, endpoint="/api/products/42", cache_key=key)
        acquires = read_pool.acquired
        product = await router.execute_read(fetch_product, endpoint="/api/products/42", cache_key=key)

        assert product == {"id": 42}
        assert read_pool.acquired == acquires
        assert cache.stats()["hits"] == 1

    async def test_cache_ttl_follows_key_shape(self, router, read_pool, cache, fake_clock):
        read_pool.data["42"] = {"id": 42}
        await router.execute_read(fetch_product, cache_key=CacheKeys.product(42))

        fake_clock.advance(301)

        assert await cache.get(CacheKeys.product(42)) is None

    async def test_missing_row_is_not_cached(self, router, read_pool):
        key = CacheKeys.product(404)

        await router.execute_read(fetch_product, cache_key=key)
        acquires = read_pool.acquired
        await router.execute_read(fetch_product, cache_key=key)

        assert read_pool.acquired == acquires + 1

    async def test_read_is_recorded(self, router, read_pool, monitor):
        read_pool.data["42"] = {"id": 42}
        await router.execute_read(fetch_product, endpoint="/api/products/42")

        metric = monitor.summary("/api/products/42")
        assert metric.read_queries == 1
        assert metric.errors == 0


@pytest.mark.unit
class TestWrites:
    async def test_write_invalidates_resource(self, router, write_pool, cache):
        await cache.set("products:42", {"id": 42, "price": 20})
        await cache.set("products:43", {"id": 43})

        await router.execute_write(update_product, resource_type="product", resource_id=42)

        assert write_pool.queries[-1] == "UPDATE products SET price = 10 WHERE id = 42"
        assert await cache.get("products:42") is None
        assert await cache.get("products:43") == {"id": 43}

    async def test_failed_write_leaves_cache_untouched(self, router, write_pool, cache):
        await cache.set("products:42", {"id": 42})
        write_pool.query_errors = [asyncpg.exceptions.UniqueViolationError("duplicate key")]

        with pytest.raises(asyncpg.exceptions.UniqueViolationError):
            await router.execute_write(update_product, resource_type="product", resource_id=42)

        assert await cache.get("products:42") == {"id": 42}

    async def test_transaction_commits_and_invalidates(self, router, write_pool, cache):
        await cache.set("pricing:rules:active", [1])

        async def reprice(connection):
            await connection.execute("UPDATE pricing_rules SET active = true")
            return "ok"

        assert await router.execute_transaction(reprice, resource_type="pricing") == "ok"
        assert write_pool.events[-2:] == ["BEGIN", "COMMIT"]
        assert await cache.get("pricing:rules:active") is None

    async def test_failed_write_is_recorded_as_error(self, router, write_pool, monitor):
        write_pool.query_errors = [ValueError("bad parameter")]

        with pytest.raises(ValueError):
            await router.execute_write(update_product, endpoint="/api/products/42")

        metric = monitor.summary("/api/products/42")
        assert metric.write_queries == 1
        assert metric.errors == 1


@pytest.mark.unit
class TestGuards:
    async def test_rate_limit_applies_before_database(self, router, read_pool):
        read_pool.data["42"] = {"id": 42}
        for _ in range(10):
            await router.execute_read(fetch_product, identifier="user:7", limiter="strict")
        acquires = read_pool.acquired

        with pytest.raises(RateLimitExceededError):
            await router.execute_read(fetch_product, identifier="user:7", limiter="strict")

        assert read_pool.acquired == acquires

    async def test_no_identifier_skips_rate_limiting(self, router):
        for _ in range(12):
            await router.execute_read(fetch_product, limiter="strict")

    async def test_outages_open_the_breaker(self, router, write_pool, breaker):
        write_pool.acquire_errors = [ConnectionResetError("reset")] * 4

        for _ in range(2):
            with pytest.raises(DatabaseUnavailableError):
                await router.execute_write(update_product)

        with pytest.raises(CircuitBreakerOpenError):
            await router.execute_write(update_product)

    async def test_query_errors_do_not_open_the_breaker(self, router, write_pool):
        write_pool.query_errors = [ValueError("bad parameter")] * 3

        for _ in range(3):
            with pytest.raises(ValueError):
                await router.execute_write(update_product)

        await router.execute_write(update_product)

    async def test_fails_fast_when_both_pools_are_down(self, router, pool_manager, write_pool, read_pool):
        write_pool.down = ConnectionRefusedError("primary down")
        read_pool.down = ConnectionRefusedError("replica down")
        await pool_manager.check_health()
        acquires = write_pool.acquired + read_pool.acquired

        with pytest.raises(DatabaseUnavailableError) as exc_info:
            await router.execute_read(fetch_product)

        assert exc_info.value.details["retry_after"] == 5
        assert write_pool.acquired + read_pool.acquired == acquires


@pytest.mark.unit
class TestRequestContext:
    async def test_endpoint_and_identifier_from_context(self, router, monitor):
        tokens = set_request_context("/api/bundles", "ip:10.0.0.1")
        try:
            for _ in range(10):
                await router.execute_read(fetch_product, limiter="strict")
            with pytest.raises(RateLimitExceededError):
                await router.execute_read(fetch_product, limiter="strict")
        finally:
            reset_request_context(tokens)

        assert monitor.summary("/api/bundles").total_queries == 10
        assert request_endpoint_ctx.get() is None

    async def test_unknown_endpoint_without_context(self, router, monitor):
        await router.execute_read(fetch_product)
        assert monitor.summary("unknown").total_queries == 1
