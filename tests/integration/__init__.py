"""
Integration tests.

These tests drive several components together through a full
DataAccessContext:
- Read/write routing across replica and primary outages
- Cache-aside reads and invalidation after writes
- Circuit breaker coordination with pool health
- Health and performance reporting

PostgreSQL is replaced by the pool doubles in tests/test_fixtures, so the
suite needs no external services.
"""
