"""
Pytest Configuration and Shared Test Fixtures

This module provides pytest configuration and reusable fixtures for all tests.
All fixtures defined here are automatically available to all test files.

PostgreSQL and Redis are replaced by the in-process doubles from
tests/test_fixtures, so the suite runs without external services.
"""

import os
import sys

import pytest

# Add project root to sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from tests.test_fixtures import (  # noqa: E402
    READ_DSN,
    WRITE_DSN,
    FakeClock,
    FakeRedis,
    PoolFactoryStub,
    build_settings,
)


# ============================================================================
# Pytest Configuration
# ============================================================================

# pytest-asyncio is automatically loaded via pyproject.toml configuration
# (asyncio_mode = "auto"), so async tests and fixtures need no decorator.


# ============================================================================
# Configuration Fixtures
# ============================================================================


@pytest.fixture
def test_settings():
    return build_settings()


# ============================================================================
# Infrastructure Doubles
# ============================================================================


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_redis(fake_clock):
    """Connected in-memory Redis sharing the test clock."""
    redis = FakeRedis(fake_clock)
    redis.connected = True
    return redis


@pytest.fixture
def pool_factory():
    """asyncpg.create_pool replacement recording every pool it opens."""
    return PoolFactoryStub()


# ============================================================================
# Component Fixtures
# ============================================================================


@pytest.fixture
async def pool_manager(pool_factory):
    """Started pool manager with a replica, zero backoff and no probe loop."""
    from src.core.resilience.connection_pool_manager import ConnectionPoolManager, PoolConfig

    manager = ConnectionPoolManager(
        write_config=PoolConfig(WRITE_DSN, 1, 5, 5000, 2000, 25000, "shop_writer_test"),
        read_config=PoolConfig(READ_DSN, 1, 8, 15000, 2000, 45000, "shop_reader_test"),
        pool_factory=pool_factory,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
    )
    await manager.start(run_health_loop=False)
    yield manager
    await manager.close()


@pytest.fixture
def write_pool(pool_manager, pool_factory):
    return pool_factory.pools[WRITE_DSN]


@pytest.fixture
def read_pool(pool_manager, pool_factory):
    return pool_factory.pools[READ_DSN]
