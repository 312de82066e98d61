"""
Unit Tests for DataAccessContext

Tests component wiring, startup/shutdown order, and the rebuild on
in-memory backends when Redis cannot be reached.
"""

import pytest

from src.application.context import DataAccessContext
from tests.test_fixtures import READ_DSN, WRITE_DSN, PoolFactoryStub, build_settings


@pytest.fixture
def redis_settings():
    return build_settings(CB_BACKEND="redis", RATE_LIMIT_BACKEND="redis", CACHE_BACKEND="redis")


@pytest.mark.unit
class TestDataAccessContext:
    async def test_start_opens_pools_and_close_releases_them(self):
        factory = PoolFactoryStub()
        context = DataAccessContext.create(build_settings(), pool_factory=factory)

        await context.start()
        assert context.is_started
        assert set(factory.pools) == {WRITE_DSN, READ_DSN}

        await context.close()
        assert not context.is_started
        assert all(pool.closed for pool in factory.pools.values())

    async def test_start_is_idempotent(self):
        factory = PoolFactoryStub()
        context = DataAccessContext.create(build_settings(), pool_factory=factory)

        await context.start()
        await context.start()

        assert len(factory.calls) == 2
        await context.close()

    async def test_components_share_redis_when_connected(self, redis_settings, fake_redis):
        context = DataAccessContext.create(redis_settings, pool_factory=PoolFactoryStub(), redis_client=fake_redis)

        await context.start()

        assert context.breakers.backend == "redis"
        assert context.cache.backend.name == "redis"
        assert context.limiters.get("default").store.backend == "redis"
        await context.close()
        assert fake_redis.connected is False

    async def test_unreachable_redis_rewires_to_memory(self, redis_settings, fake_redis):
        fake_redis.refuse_connect = True
        context = DataAccessContext.create(redis_settings, pool_factory=PoolFactoryStub(), redis_client=fake_redis)
        router_before = context.router

        await context.start()

        assert context.redis_client is None
        assert context.breakers.backend == "memory"
        assert context.cache.backend.name == "memory"
        assert context.limiters.get("default").store.backend == "memory"
        assert context.router is not router_before
        assert context.database_breaker is context.breakers.get("database")
        await context.close()

    async def test_router_serves_reads_after_start(self):
        factory = PoolFactoryStub()
        factory.data["7"] = {"id": 7}
        context = DataAccessContext.create(build_settings(), pool_factory=factory)
        await context.start()

        async def fetch(connection):
            return await connection.fetchrow("SELECT * FROM products WHERE id = $1", 7)

        try:
            assert await context.router.execute_read(fetch, endpoint="/api/products/7") == {"id": 7}
            assert context.monitor.summary("/api/products/7").read_queries == 1
        finally:
            await context.close()
