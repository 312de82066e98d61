"""
Unit Tests for QueryPerformanceMonitor

Tests per-endpoint totals, derived ratios, the cross-endpoint overview and
the recommendation generator.
"""

import math

import pytest

from src.core.config.constants import QueryKind
from src.core.resilience.connection_pool_manager import ConnectionHealth
from src.infrastructure.monitoring.performance_monitor import (
    ALL_GOOD_MESSAGE,
    PerformanceMetric,
    QueryPerformanceMonitor,
    RecommendationThresholds,
    generate_recommendations,
    load_reduction,
)
from tests.test_fixtures import build_settings

HEALTHY_SPLIT = ConnectionHealth(write=True, read=True, read_write_split_enabled=True)


@pytest.fixture
def monitor():
    return QueryPerformanceMonitor(slow_query_ms=100)


@pytest.mark.unit
class TestRecord:
    def test_totals_accumulate_per_endpoint(self, monitor):
        monitor.record("/api/products", QueryKind.READ, 20.0)
        monitor.record("/api/products", "read", 40.0)
        monitor.record("/api/products", QueryKind.WRITE, 60.0, success=False)

        metric = monitor.summary("/api/products")

        assert metric.total_queries == 3
        assert metric.read_queries == 2
        assert metric.write_queries == 1
        assert metric.errors == 1
        assert metric.average_time_ms == pytest.approx(40.0)
        assert metric.error_rate == pytest.approx(100 / 3)
        assert metric.read_write_ratio == 2.0

    def test_slow_queries_counted_above_threshold(self, monitor):
        monitor.record("/api/bundles", "read", 100.0)
        monitor.record("/api/bundles", "read", 100.1)

        assert monitor.summary("/api/bundles").slow_queries == 1

    def test_unknown_endpoint_summary_is_none(self, monitor):
        assert monitor.summary("/api/never") is None

    def test_summary_without_endpoint_aggregates_all(self, monitor):
        monitor.record("/api/products", "read", 10.0)
        monitor.record("/api/orders", "write", 30.0)

        total = monitor.summary()

        assert total.total_queries == 2
        assert total.average_time_ms == pytest.approx(20.0)

    def test_summary_is_a_copy(self, monitor):
        monitor.record("/api/products", "read", 10.0)
        monitor.summary("/api/products").total_queries = 99

        assert monitor.summary("/api/products").total_queries == 1

    def test_reset_clears_everything(self, monitor):
        monitor.record("/api/products", "read", 10.0)
        monitor.reset()

        assert monitor.get_all_metrics() == []
        assert monitor.summary().total_queries == 0

    def test_from_settings(self):
        monitor = QueryPerformanceMonitor.from_settings(build_settings(PERF_SLOW_QUERY_MS=250, PERF_MAX_ENDPOINTS=50))
        assert monitor.slow_query_ms == 250
        assert monitor.max_endpoints == 50

    def test_endpoint_count_is_capped(self):
        monitor = QueryPerformanceMonitor(max_endpoints=100)

        for product_id in range(10_000):
            monitor.record(f"/api/products/{product_id}", "read", 1.0)

        assert len(monitor.get_all_metrics()) == 100
        assert monitor.summary("/api/products/9999").read_queries == 1
        assert monitor.summary("/api/products/0") is None

    def test_least_recently_recorded_endpoint_is_evicted(self):
        monitor = QueryPerformanceMonitor(max_endpoints=2)
        monitor.record("/api/products", "read", 1.0)
        monitor.record("/api/orders", "write", 1.0)
        monitor.record("/api/products", "read", 1.0)

        monitor.record("/api/bundles", "read", 1.0)

        assert monitor.summary("/api/orders") is None
        assert monitor.summary("/api/products").read_queries == 2
        assert monitor.summary("/api/bundles") is not None


@pytest.mark.unit
class TestPerformanceMetric:
    def test_empty_metric_ratios_are_zero(self):
        metric = PerformanceMetric(endpoint="/api/products")

        assert metric.average_time_ms == 0.0
        assert metric.error_rate == 0.0
        assert metric.read_write_ratio == 0.0

    def test_reads_without_writes_is_infinite_ratio(self):
        metric = PerformanceMetric(endpoint="/api/products", total_queries=2, read_queries=2)

        assert math.isinf(metric.read_write_ratio)
        assert metric.to_dict()["read_write_ratio"] is None


@pytest.mark.unit
class TestOverview:
    def test_load_reduction(self):
        metrics = [
            PerformanceMetric(endpoint="/a", total_queries=8, read_queries=6, write_queries=2),
            PerformanceMetric(endpoint="/b", total_queries=2, read_queries=1, write_queries=1),
        ]

        assert load_reduction(metrics) == {
            "write_pool_reduction": 70,
            "read_write_ratio": 2.33,
            "total_queries": 10,
        }

    def test_load_reduction_without_queries(self):
        assert load_reduction([]) == {"write_pool_reduction": 0, "read_write_ratio": 0.0, "total_queries": 0}

    def test_overview_ranks_endpoints(self, monitor):
        monitor.record("/api/products", "read", 10.0)
        monitor.record("/api/orders", "write", 90.0, success=False)

        overview = monitor.overview()

        assert overview["total_endpoints"] == 2
        assert overview["slowest_endpoint"] == "/api/orders"
        assert overview["fastest_endpoint"] == "/api/products"
        assert overview["average_response_time_ms"] == 50
        assert overview["error_rate"] == 50

    def test_empty_overview(self, monitor):
        assert monitor.overview()["slowest_endpoint"] is None


@pytest.mark.unit
class TestRecommendations:
    def test_all_good(self):
        metrics = [PerformanceMetric(endpoint="/a", total_queries=10, total_time_ms=50, read_queries=9, write_queries=1)]

        assert generate_recommendations(metrics, HEALTHY_SPLIT) == [ALL_GOOD_MESSAGE]

    def test_no_queries_does_not_suggest_read_offload(self):
        assert generate_recommendations([], HEALTHY_SPLIT) == [ALL_GOOD_MESSAGE]

    def test_every_hint_in_order(self):
        metrics = [
            PerformanceMetric(
                endpoint="/api/orders", total_queries=10, total_time_ms=20_000, write_queries=10, errors=2
            ),
        ]
        health = ConnectionHealth(write=False, read=False, read_write_split_enabled=True)

        recommendations = generate_recommendations(metrics, health)

        assert recommendations == [
            "Optimize slow endpoints: /api/orders",
            "Investigate high error rates on: /api/orders",
            "Consider optimizing more queries to use read replicas for better load distribution",
            "Read replica is unavailable - all queries are using write database",
            "CRITICAL: Write database is unavailable",
        ]

    def test_split_disabled_hint(self):
        health = ConnectionHealth(write=True, read=True, read_write_split_enabled=False)

        recommendations = generate_recommendations([], health)

        assert recommendations == [
            "Enable read/write splitting by configuring DATABASE_READONLY_URL for better performance"
        ]

    def test_thresholds_are_configurable(self):
        metrics = [PerformanceMetric(endpoint="/a", total_queries=1, total_time_ms=300, read_queries=1)]
        thresholds = RecommendationThresholds.from_settings(build_settings(PERF_SLOW_QUERY_MS=200))

        assert generate_recommendations(metrics, HEALTHY_SPLIT, thresholds) == ["Optimize slow endpoints: /a"]

    def test_is_pure(self, monitor):
        monitor.record("/api/products", "read", 10.0)

        first = monitor.recommendations(HEALTHY_SPLIT)
        second = monitor.recommendations(HEALTHY_SPLIT)

        assert first == second
        assert monitor.summary("/api/products").total_queries == 1
