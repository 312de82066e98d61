"""
Database Test Factory

In-process stand-ins for asyncpg pools and connections. Pools share a
`data` dict so a write on the primary is visible through a replica the
way streaming replication would make it.
"""

import asyncio
from typing import Any


class FakeTransaction:
    """Snapshot on BEGIN, restore on ROLLBACK."""

    def __init__(self, connection: "FakeConnection"):
        self._connection = connection
        self._snapshot: dict[str, Any] = {}

    async def __aenter__(self):
        self._snapshot = dict(self._connection.pool.data)
        self._connection.pool.events.append("BEGIN")
        return self

    async def __aexit__(self, exc_type, exc, tb):
        pool = self._connection.pool
        if exc_type is None:
            pool.events.append("COMMIT")
        else:
            pool.data.clear()
            pool.data.update(self._snapshot)
            pool.events.append("ROLLBACK")
        return False


class FakeConnection:
    def __init__(self, pool: "FakePool"):
        self.pool = pool

    async def fetchval(self, query: str, *args):
        self.pool.queries.append(query)
        self.pool.raise_query_error()
        return 1

    async def fetch(self, query: str, *args):
        self.pool.queries.append(query)
        self.pool.raise_query_error()
        return [dict(row) for row in self.pool.data.values()]

    async def fetchrow(self, query: str, *args):
        self.pool.queries.append(query)
        self.pool.raise_query_error()
        return self.pool.data.get(str(args[0])) if args else None

    async def execute(self, query: str, *args):
        self.pool.queries.append(query)
        self.pool.raise_query_error()
        return "OK"

    def transaction(self) -> FakeTransaction:
        return FakeTransaction(self)


class _Acquire:
    def __init__(self, pool: "FakePool"):
        self._pool = pool

    async def __aenter__(self) -> FakeConnection:
        self._pool.acquired += 1
        if self._pool.acquire_errors:
            self._pool.released += 1
            raise self._pool.acquire_errors.pop(0)
        if self._pool.down is not None:
            self._pool.released += 1
            raise self._pool.down
        return FakeConnection(self._pool)

    async def __aexit__(self, exc_type, exc, tb):
        self._pool.released += 1
        return False


class FakePool:
    """
    asyncpg.Pool double.

    Failure injection:
        pool.acquire_errors = [ConnectionError()]  # next acquire raises, once per entry
        pool.down = ConnectionRefusedError()       # every acquire raises until cleared
        pool.query_errors = [asyncpg.UniqueViolationError("duplicate key")]  # next query raises
    """

    def __init__(self, name: str, data: dict[str, Any] | None = None, min_size: int = 1, max_size: int = 10):
        self.name = name
        self.data = data if data is not None else {}
        self.min_size = min_size
        self.max_size = max_size
        self.acquire_errors: list[Exception] = []
        self.query_errors: list[Exception] = []
        self.down: Exception | None = None
        self.queries: list[str] = []
        self.events: list[str] = []
        self.acquired = 0
        self.released = 0
        self.closed = False

    def acquire(self, timeout: float | None = None) -> _Acquire:
        return _Acquire(self)

    def raise_query_error(self) -> None:
        if self.query_errors:
            raise self.query_errors.pop(0)

    def get_size(self) -> int:
        return self.max_size

    def get_idle_size(self) -> int:
        return self.max_size - (self.acquired - self.released)

    def get_min_size(self) -> int:
        return self.min_size

    def get_max_size(self) -> int:
        return self.max_size

    async def close(self) -> None:
        self.closed = True


class PoolFactoryStub:
    """
    Drop-in for asyncpg.create_pool that records every pool it opens.

    Pools are keyed by DSN; all pools share one data dict.
    `delays` holds seconds to wait before a DSN opens or fails.
    """

    def __init__(self, fail_dsns: set[str] | None = None):
        self.data: dict[str, Any] = {}
        self.pools: dict[str, FakePool] = {}
        self.calls: list[dict[str, Any]] = []
        self.fail_dsns = set(fail_dsns or ())
        self.delays: dict[str, float] = {}

    async def __call__(self, dsn: str, **kwargs) -> FakePool:
        self.calls.append({"dsn": dsn, **kwargs})
        if dsn in self.delays:
            await asyncio.sleep(self.delays[dsn])
        if dsn in self.fail_dsns:
            raise ConnectionRefusedError(f"could not connect to {dsn}")
        pool = FakePool(dsn, data=self.data, min_size=kwargs.get("min_size", 1), max_size=kwargs.get("max_size", 10))
        self.pools[dsn] = pool
        return pool
