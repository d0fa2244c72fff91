"""
Health checks for the state store, the ingestion queue and other dependencies.
"""

from health.service import (
    CRITICAL_DEPENDENCIES,
    DependencyHealth,
    HealthCheckService,
    HealthStatus,
)

__all__ = [
    "CRITICAL_DEPENDENCIES",
    "DependencyHealth",
    "HealthCheckService",
    "HealthStatus",
]
