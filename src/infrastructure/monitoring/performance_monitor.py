#!/usr/bin/env python3
"""
Query Performance Monitor

Per-endpoint running totals of database work, with derived statistics
computed on read and a pure recommendation generator for operators.

STAGE-PM.1: Record
STAGE-PM.2: Summarize
STAGE-PM.3: Recommend
STAGE-PM.4: Reset

The monitor is request-driven: there is no background loop and every
`record()` is O(1). Totals grow for the life of the process until an
explicit `reset()`.

Author: System Architect
Date: 2025-12-14
"""

import math
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from src.core.config.constants import QueryKind
from src.core.config.settings import Settings, get_settings
from src.core.logging.logger import get_logger
from src.core.resilience.connection_pool_manager import ConnectionHealth

logger = get_logger(__name__)

DEFAULT_MAX_ENDPOINTS = 1000


@dataclass
class PerformanceMetric:
    """Running totals for one endpoint. Ratios are derived, never stored."""

    endpoint: str
    total_queries: int = 0
    total_time_ms: float = 0.0
    read_queries: int = 0
    write_queries: int = 0
    slow_queries: int = 0
    errors: int = 0

    @property
    def average_time_ms(self) -> float:
        if self.total_queries == 0:
            return 0.0
        return self.total_time_ms / self.total_queries

    @property
    def error_rate(self) -> float:
        """Percent of calls that failed."""
        if self.total_queries == 0:
            return 0.0
        return self.errors / self.total_queries * 100

    @property
    def read_write_ratio(self) -> float:
        if self.write_queries > 0:
            return self.read_queries / self.write_queries
        return math.inf if self.read_queries > 0 else 0.0

    def merge(self, other: "PerformanceMetric") -> None:
        self.total_queries += other.total_queries
        self.total_time_ms += other.total_time_ms
        self.read_queries += other.read_queries
        self.write_queries += other.write_queries
        self.slow_queries += other.slow_queries
        self.errors += other.errors

    def to_dict(self) -> dict[str, Any]:
        ratio = self.read_write_ratio
        return {
            "endpoint": self.endpoint,
            "total_queries": self.total_queries,
            "total_time_ms": round(self.total_time_ms, 2),
            "read_queries": self.read_queries,
            "write_queries": self.write_queries,
            "slow_queries": self.slow_queries,
            "errors": self.errors,
            "average_time_ms": round(self.average_time_ms, 2),
            "error_rate": round(self.error_rate, 2),
            # JSON has no infinity
            "read_write_ratio": None if math.isinf(ratio) else round(ratio, 2),
        }


@dataclass(frozen=True)
class RecommendationThresholds:
    slow_endpoint_ms: float = 1000.0
    high_error_rate: float = 5.0
    low_read_offload_pct: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RecommendationThresholds":
        perf = (settings or get_settings()).performance
        return cls(
            slow_endpoint_ms=perf.PERF_SLOW_QUERY_MS,
            high_error_rate=perf.PERF_HIGH_ERROR_RATE,
            low_read_offload_pct=perf.PERF_LOW_READ_OFFLOAD_PCT,
        )


ALL_GOOD_MESSAGE = "Performance looks good! No immediate optimizations needed."


def load_reduction(metrics: list[PerformanceMetric]) -> dict[str, Any]:
    """Share of queries taken off the write pool by read routing."""
    reads = sum(m.read_queries for m in metrics)
    writes = sum(m.write_queries for m in metrics)
    total = sum(m.total_queries for m in metrics)

    reduction = reads / total * 100 if total else 0.0
    ratio = reads / writes if writes else float(reads)
    return {
        "write_pool_reduction": round(reduction),
        "read_write_ratio": round(ratio, 2),
        "total_queries": total,
    }


def performance_overview(metrics: list[PerformanceMetric]) -> dict[str, Any]:
    """Cross-endpoint summary: averages plus the slowest and fastest endpoints."""
    if not metrics:
        return {
            "total_endpoints": 0,
            "average_response_time_ms": 0,
            "slowest_endpoint": None,
            "fastest_endpoint": None,
            "error_rate": 0,
        }

    total = PerformanceMetric(endpoint="*")
    for metric in metrics:
        total.merge(metric)
    ranked = sorted(metrics, key=lambda m: m.average_time_ms, reverse=True)
    return {
        "total_endpoints": len(metrics),
        "average_response_time_ms": round(total.average_time_ms),
        "slowest_endpoint": ranked[0].endpoint,
        "fastest_endpoint": ranked[-1].endpoint,
        "error_rate": round(total.error_rate),
    }


def generate_recommendations(
    metrics: list[PerformanceMetric],
    health: ConnectionHealth,
    thresholds: RecommendationThresholds | None = None,
) -> list[str]:
    """
    Operator hints from a metrics and pool-health snapshot.

    Pure function: same inputs, same output, no side effects.

    STAGE-PM.3: Recommend
    """
    thresholds = thresholds or RecommendationThresholds()
    recommendations: list[str] = []

    if not health.read_write_split_enabled:
        recommendations.append(
            "Enable read/write splitting by configuring DATABASE_READONLY_URL for better performance"
        )

    slow = [m.endpoint for m in metrics if m.average_time_ms > thresholds.slow_endpoint_ms]
    if slow:
        recommendations.append(f"Optimize slow endpoints: {', '.join(slow)}")

    failing = [m.endpoint for m in metrics if m.error_rate > thresholds.high_error_rate]
    if failing:
        recommendations.append(f"Investigate high error rates on: {', '.join(failing)}")

    reduction = load_reduction(metrics)
    if (
        health.read_write_split_enabled
        and reduction["total_queries"] > 0
        and reduction["write_pool_reduction"] < thresholds.low_read_offload_pct
    ):
        recommendations.append(
            "Consider optimizing more queries to use read replicas for better load distribution"
        )

    if health.read_write_split_enabled and not health.read:
        recommendations.append("Read replica is unavailable - all queries are using write database")

    if not health.write:
        recommendations.append("CRITICAL: Write database is unavailable")

    if not recommendations:
        recommendations.append(ALL_GOOD_MESSAGE)

    return recommendations


class QueryPerformanceMonitor:
    """
    Per-endpoint query statistics.

    At most `max_endpoints` endpoints are tracked; recording a new one past
    the cap evicts the least recently recorded endpoint.

    Usage:
        monitor = QueryPerformanceMonitor(slow_query_ms=1000)
        monitor.record("/api/products", QueryKind.READ, 12.5, success=True)

        monitor.summary("/api/products").average_time_ms
        monitor.summary().total_queries      # all endpoints
        monitor.reset()
    """

    def __init__(self, slow_query_ms: float = 1000.0, max_endpoints: int = DEFAULT_MAX_ENDPOINTS):
        self._slow_query_ms = slow_query_ms
        self._max_endpoints = max_endpoints
        self._metrics: OrderedDict[str, PerformanceMetric] = OrderedDict()

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "QueryPerformanceMonitor":
        perf = (settings or get_settings()).performance
        return cls(slow_query_ms=perf.PERF_SLOW_QUERY_MS, max_endpoints=perf.PERF_MAX_ENDPOINTS)

    @property
    def slow_query_ms(self) -> float:
        return self._slow_query_ms

    @property
    def max_endpoints(self) -> int:
        return self._max_endpoints

    def record(
        self,
        endpoint: str,
        kind: QueryKind | str,
        duration_ms: float,
        success: bool = True,
    ) -> None:
        """
        Add one call to the endpoint's totals.

        STAGE-PM.1: Record
        """
        metric = self._metrics.get(endpoint)
        if metric is None:
            metric = PerformanceMetric(endpoint=endpoint)
            self._metrics[endpoint] = metric
            if len(self._metrics) > self._max_endpoints:
                evicted, _ = self._metrics.popitem(last=False)
                logger.debug("Endpoint metrics evicted", stage="PM.1.EVICT", endpoint=evicted)
        else:
            self._metrics.move_to_end(endpoint)

        metric.total_queries += 1
        metric.total_time_ms += duration_ms
        if QueryKind(kind) is QueryKind.READ:
            metric.read_queries += 1
        else:
            metric.write_queries += 1
        if duration_ms > self._slow_query_ms:
            metric.slow_queries += 1
        if not success:
            metric.errors += 1

    def summary(self, endpoint: str | None = None) -> PerformanceMetric | None:
        """
        Totals for one endpoint (None if never seen), or all endpoints combined.

        STAGE-PM.2: Summarize
        """
        if endpoint is not None:
            metric = self._metrics.get(endpoint)
            if metric is None:
                return None
            aggregate = PerformanceMetric(endpoint=endpoint)
            aggregate.merge(metric)
            return aggregate

        aggregate = PerformanceMetric(endpoint="*")
        for metric in self._metrics.values():
            aggregate.merge(metric)
        return aggregate

    def get_all_metrics(self) -> list[PerformanceMetric]:
        """Snapshot copies, safe to hand to other components."""
        snapshot = []
        for endpoint, metric in self._metrics.items():
            copy = PerformanceMetric(endpoint=endpoint)
            copy.merge(metric)
            snapshot.append(copy)
        return snapshot

    def overview(self) -> dict[str, Any]:
        return performance_overview(self.get_all_metrics())

    def load_reduction(self) -> dict[str, Any]:
        return load_reduction(self.get_all_metrics())

    def recommendations(
        self,
        health: ConnectionHealth,
        thresholds: RecommendationThresholds | None = None,
    ) -> list[str]:
        return generate_recommendations(self.get_all_metrics(), health, thresholds)

    def reset(self) -> None:
        """
        Drop every accumulated total. Irreversible.

        STAGE-PM.4: Reset
        """
        endpoints = len(self._metrics)
        self._metrics.clear()
        logger.info("Performance metrics reset", stage="PM.4", endpoints_cleared=endpoints)
