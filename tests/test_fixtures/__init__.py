"""
Test Fixtures Package

In-process doubles for PostgreSQL pools and Redis, shared across all tests.
"""

from .database_factory import FakeConnection, FakePool, FakeTransaction, PoolFactoryStub
from .redis_factory import FakeClock, FakeRedis
from .settings_factory import READ_DSN, WRITE_DSN, build_settings

__all__ = [
    "READ_DSN",
    "WRITE_DSN",
    "build_settings",
    "FakeClock",
    "FakeConnection",
    "FakePool",
    "FakeRedis",
    "FakeTransaction",
    "PoolFactoryStub",
]
