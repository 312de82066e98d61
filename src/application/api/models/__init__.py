"""
API Models Package

Pydantic request and response models for the operations endpoints.
"""

from src.application.api.models.admin import (
    CacheInvalidationRequest,
    CacheInvalidationResponse,
    DatabaseHealthResponse,
    EndpointMetrics,
    HealthResponse,
    LoadReduction,
    MessageResponse,
    PerformanceReport,
    PerformanceSummary,
)

__all__ = [
    "CacheInvalidationRequest",
    "CacheInvalidationResponse",
    "DatabaseHealthResponse",
    "EndpointMetrics",
    "HealthResponse",
    "LoadReduction",
    "MessageResponse",
    "PerformanceReport",
    "PerformanceSummary",
]
