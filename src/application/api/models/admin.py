"""
Admin and Health API Models
===========================

Pydantic models for the operations surface. Response models describe the
stable top-level shape; nested component reports stay `dict[str, Any]`
because each component owns its own stats format.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from src.infrastructure.cache.invalidation import ResourceType

# ============================================================================
# HEALTH MODELS
# ============================================================================


class DatabaseHealthResponse(BaseModel):
    """Last-known pool liveness, as consumed by load balancers and dashboards."""

    model_config = ConfigDict(populate_by_name=True)

    write: bool = Field(..., description="Primary pool answered the last probe")
    read: bool = Field(..., description="Read pool answered the last probe")
    read_write_split_enabled: bool = Field(
        ..., alias="readWriteSplitEnabled", description="A replica URL is configured"
    )


class HealthResponse(BaseModel):
    status: str = Field(..., description="healthy, degraded or unhealthy")
    timestamp: str
    version: str | None = None
    components: dict[str, Any] | None = None


# ============================================================================
# PERFORMANCE MODELS
# ============================================================================


class EndpointMetrics(BaseModel):
    endpoint: str
    total_queries: int = Field(..., ge=0)
    total_time_ms: float = Field(..., ge=0)
    read_queries: int = Field(..., ge=0)
    write_queries: int = Field(..., ge=0)
    slow_queries: int = Field(..., ge=0)
    errors: int = Field(..., ge=0)
    average_time_ms: float = Field(..., ge=0)
    error_rate: float = Field(..., ge=0, le=100, description="Percent of failed calls")
    read_write_ratio: float | None = Field(
        None, description="Reads per write; null when there are reads but no writes"
    )


class LoadReduction(BaseModel):
    write_pool_reduction: float = Field(..., ge=0, le=100, description="Percent of queries served by reads")
    read_write_ratio: float = Field(..., ge=0)
    total_queries: int = Field(..., ge=0)


class PerformanceSummary(BaseModel):
    total_endpoints: int = Field(..., ge=0)
    average_response_time_ms: float = Field(..., ge=0)
    slowest_endpoint: str | None = None
    fastest_endpoint: str | None = None
    error_rate: float = Field(..., ge=0)


class PerformanceReport(BaseModel):
    health: DatabaseHealthResponse
    load_reduction: LoadReduction
    by_endpoint: list[EndpointMetrics]
    summary: PerformanceSummary
    recommendations: list[str]


# ============================================================================
# CACHE MODELS
# ============================================================================


class CacheInvalidationRequest(BaseModel):
    """Body of POST /admin/cache/invalidate."""

    type: str = Field(..., description="product, pricing, bundle, order, collection or all")
    id: str | int | None = Field(None, description="Resource id, narrows the invalidation")
    category: str | None = Field(None, description="Product category, for category listings")

    @field_validator("type")
    @classmethod
    def normalize_type(cls, v: str) -> str:
        return v.strip().lower()


class CacheInvalidationResponse(BaseModel):
    success: bool = True
    type: ResourceType
    deleted: int = Field(..., ge=0)
    timestamp: str


class MessageResponse(BaseModel):
    message: str
    timestamp: str
