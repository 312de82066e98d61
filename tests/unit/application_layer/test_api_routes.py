"""
Unit Tests for API Routes

Tests the health and admin surfaces, the routing middleware headers,
fail-fast when both pools are down, and error-to-status translation, with
TestClient against an app whose DataAccessContext runs on pool doubles.
"""

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from src.application.api.dependencies import QueryRouterDep
from src.application.app import create_app
from src.application.context import DataAccessContext
from src.core.exceptions import (
    CircuitBreakerOpenError,
    DatabaseUnavailableError,
    FatalDatabaseError,
)
from src.infrastructure.cache.cache_keys import CacheKeys
from tests.test_fixtures import READ_DSN, WRITE_DSN, PoolFactoryStub, build_settings

FAILURES = {
    "circuit": lambda: CircuitBreakerOpenError(
        "Circuit breaker 'database' is open", name="database", retry_after=12.3
    ),
    "database": lambda: DatabaseUnavailableError("Write pool unreachable after retry", code="53300"),
    "fatal": lambda: FatalDatabaseError("Protocol violation", code="08P01"),
    "crash": lambda: RuntimeError("unexpected"),
}


def add_product_routes(app) -> None:
    """Minimal product API exercising the router the way handlers do."""

    @app.get("/api/v1/products/{product_id}")
    async def get_product(product_id: int, router: QueryRouterDep, limiter: str = "default"):
        product = await router.execute_read(
            lambda conn: conn.fetchrow("SELECT * FROM products WHERE id = $1", product_id),
            cache_key=CacheKeys.product(product_id),
            limiter=limiter,
        )
        if product is None:
            raise HTTPException(status_code=404, detail="Product not found")
        return product

    @app.put("/api/v1/products/{product_id}")
    async def update_product(product_id: int, router: QueryRouterDep):
        await router.execute_write(
            lambda conn: conn.execute("UPDATE products SET price = $1 WHERE id = $2", 10, product_id),
            resource_type="product",
            resource_id=product_id,
        )
        return {"updated": product_id}

    @app.get("/api/v1/failures/{kind}")
    async def fail(kind: str):
        raise FAILURES[kind]()


@pytest.fixture
def make_client():
    clients = []

    def _make(fail_dsns=None, **overrides):
        settings = build_settings(**overrides)
        factory = PoolFactoryStub(fail_dsns=fail_dsns)
        app = create_app(settings)
        add_product_routes(app)
        app.state.data_access = DataAccessContext.create(settings, pool_factory=factory)
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client, app.state.data_access, factory

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    client, _, _ = make_client()
    return client


@pytest.mark.unit
class TestHealthRoutes:
    def test_health_is_healthy_with_both_pools(self, client):
        response = client.get("/api/v1/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["version"] == "1.0.0"
        assert data["components"]["database_read"] == "healthy"

    def test_replica_down_is_degraded(self, make_client):
        client, _, _ = make_client(fail_dsns={READ_DSN})

        response = client.get("/api/v1/health")

        assert response.status_code == 200
        assert response.json()["status"] == "degraded"

    def test_primary_down_is_503(self, make_client):
        client, _, _ = make_client(fail_dsns={WRITE_DSN})

        response = client.get("/api/v1/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"

    def test_database_health_shape(self, make_client):
        client, _, _ = make_client(fail_dsns={READ_DSN})

        response = client.get("/api/v1/health/database")

        assert response.json() == {"write": True, "read": False, "readWriteSplitEnabled": True}

    def test_database_health_without_replica(self, make_client):
        client, _, _ = make_client(DATABASE_READONLY_URL=None)

        data = client.get("/api/v1/health/database").json()

        assert data["readWriteSplitEnabled"] is False
        assert data["read"] == data["write"] is True

    def test_liveness_and_readiness(self, make_client):
        client, _, _ = make_client(fail_dsns={WRITE_DSN})

        assert client.get("/api/v1/health/live").json()["status"] == "alive"
        response = client.get("/api/v1/health/ready")
        assert response.status_code == 503
        assert response.json()["status"] == "not_ready"

    def test_detailed_report(self, client):
        data = client.get("/api/v1/health/detailed").json()

        assert data["status"] == "healthy"
        assert "circuit_breakers" in data["components"]


@pytest.mark.unit
class TestRoutingMiddleware:
    def test_database_headers(self, make_client):
        client, _, _ = make_client(fail_dsns={READ_DSN})

        response = client.get("/api/v1/health/database")

        assert response.headers["X-DB-Write-Available"] == "true"
        assert response.headers["X-DB-Read-Available"] == "false"
        assert response.headers["X-DB-Split-Enabled"] == "true"
        assert response.headers["X-Response-Time"].endswith("ms")

    def test_request_id_is_echoed_or_generated(self, client):
        echoed = client.get("/api/v1/health/live", headers={"X-Request-ID": "req-123"})
        generated = client.get("/api/v1/health/live")

        assert echoed.headers["X-Request-ID"] == "req-123"
        assert len(generated.headers["X-Request-ID"]) == 36

    def test_both_pools_down_fails_fast(self, make_client):
        client, _, factory = make_client(fail_dsns={WRITE_DSN, READ_DSN})

        response = client.get("/api/v1/products/42")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"
        assert response.json()["error"] == "database_unavailable"
        assert factory.pools == {}

    def test_health_and_admin_stay_reachable_when_pools_are_down(self, make_client):
        client, _, _ = make_client(fail_dsns={WRITE_DSN, READ_DSN})

        assert client.get("/api/v1/health").status_code == 503
        assert client.get("/api/v1/admin/pools").status_code == 200


@pytest.mark.unit
class TestProductRoutes:
    def test_read_is_cached_and_write_invalidates(self, make_client):
        client, context, factory = make_client()
        factory.data["42"] = {"id": 42, "price": 20}

        assert client.get("/api/v1/products/42").json() == {"id": 42, "price": 20}
        factory.data["42"] = {"id": 42, "price": 10}
        assert client.get("/api/v1/products/42").json()["price"] == 20

        assert client.put("/api/v1/products/42").json() == {"updated": 42}
        assert client.get("/api/v1/products/42").json()["price"] == 10

    def test_unknown_product_is_404(self, client):
        assert client.get("/api/v1/products/404").status_code == 404

    def test_rate_limit_returns_429(self, make_client):
        client, _, factory = make_client()
        factory.data["1"] = {"id": 1}

        statuses = [client.get("/api/v1/products/1?limiter=strict").status_code for _ in range(11)]
        response = client.get("/api/v1/products/1?limiter=strict")

        assert statuses[:10] == [200] * 10
        assert statuses[10] == 429
        assert response.status_code == 429
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert int(response.headers["Retry-After"]) >= 1
        assert response.json()["error_type"] == "RateLimitExceededError"

    def test_reads_are_recorded_per_route_template(self, make_client):
        client, context, factory = make_client()
        factory.data["7"] = {"id": 7}
        factory.data["8"] = {"id": 8}

        client.get("/api/v1/products/7")
        client.get("/api/v1/products/8")

        assert context.monitor.summary("/api/v1/products/{product_id}").read_queries == 2
        assert context.monitor.summary("/api/v1/products/7") is None
        assert [m.endpoint for m in context.monitor.get_all_metrics()] == ["/api/v1/products/{product_id}"]


@pytest.mark.unit
class TestErrorTranslation:
    def test_open_circuit_is_503_with_cooldown(self, client):
        response = client.get("/api/v1/failures/circuit")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "13"
        assert response.json()["details"]["breaker"] == "database"

    def test_database_unavailable_is_503(self, client):
        response = client.get("/api/v1/failures/database")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "5"

    def test_fatal_database_error_has_no_retry_hint(self, client):
        response = client.get("/api/v1/failures/fatal")

        assert response.status_code == 503
        assert "Retry-After" not in response.headers

    def test_unexpected_error_is_generic_500(self, client):
        response = client.get("/api/v1/failures/crash")

        assert response.status_code == 500
        data = response.json()
        assert data["error"] == "internal_server_error"
        assert "traceback" not in data


@pytest.mark.unit
class TestAdminRoutes:
    def test_performance_report(self, make_client):
        client, _, factory = make_client()
        factory.data["7"] = {"id": 7}
        client.get("/api/v1/products/7")

        data = client.get("/api/v1/admin/performance").json()

        assert data["health"] == {"write": True, "read": True, "readWriteSplitEnabled": True}
        assert data["load_reduction"]["write_pool_reduction"] == 100
        assert data["by_endpoint"][0]["endpoint"] == "/api/v1/products/{product_id}"
        assert data["by_endpoint"][0]["read_write_ratio"] is None
        assert data["summary"]["total_endpoints"] == 1
        assert data["recommendations"] == ["Performance looks good! No immediate optimizations needed."]

    def test_performance_report_for_one_endpoint(self, client):
        data = client.get("/api/v1/admin/performance", params={"endpoint": "/api/v1/never"}).json()
        assert data["by_endpoint"] == []

    def test_performance_reset(self, make_client):
        client, context, factory = make_client()
        client.get("/api/v1/products/7")

        response = client.post("/api/v1/admin/performance/reset")

        assert response.json()["message"] == "Performance metrics reset successfully"
        assert context.monitor.get_all_metrics() == []

    def test_split_disabled_recommendation(self, make_client):
        client, _, _ = make_client(DATABASE_READONLY_URL=None)

        recommendations = client.get("/api/v1/admin/performance").json()["recommendations"]

        assert recommendations[0].startswith("Enable read/write splitting")

    def test_pools(self, client):
        data = client.get("/api/v1/admin/pools").json()

        assert data["read_write_split_enabled"] is True
        assert set(data["pools"]) == {"write", "read"}

    def test_circuit_breakers_and_reset(self, client):
        data = client.get("/api/v1/admin/circuit-breakers").json()
        assert data["backend"] == "memory"
        assert data["circuit_breakers"]["database"]["state"] == "closed"

        response = client.post("/api/v1/admin/circuit-breakers/database/reset")
        assert response.status_code == 200
        assert response.json()["state"] == "closed"

    def test_reset_unknown_breaker_is_404(self, client):
        assert client.post("/api/v1/admin/circuit-breakers/payments/reset").status_code == 404

    def test_rate_limits(self, client):
        limiters = client.get("/api/v1/admin/rate-limits").json()["limiters"]

        assert set(limiters) == {"default", "strict", "auth"}
        assert limiters["strict"]["limit"] == 10

    def test_cache_stats_and_invalidate(self, make_client):
        client, context, factory = make_client()
        factory.data["42"] = {"id": 42}
        client.get("/api/v1/products/42")

        stats = client.get("/api/v1/admin/cache/stats").json()
        assert stats["misses"] == 1
        assert stats["backend"] == "memory"

        response = client.post("/api/v1/admin/cache/invalidate", json={"type": "Product", "id": 42})
        assert response.status_code == 200
        assert response.json()["type"] == "product"
        assert response.json()["deleted"] == 1

    def test_invalidate_unknown_type_is_400(self, client):
        response = client.post("/api/v1/admin/cache/invalidate", json={"type": "customer"})

        assert response.status_code == 400
        assert response.json()["error_type"] == "InvalidResourceTypeError"

    def test_prometheus_metrics(self, client):
        response = client.get("/api/v1/admin/metrics")

        assert response.status_code == 200
        assert "dal_http_requests_total" in response.text
