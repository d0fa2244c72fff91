"""
Health checks for the asset tracking service.

Readiness checks every registered dependency concurrently, each bounded by
a timeout (5 seconds by default), and reports per-dependency response times.
The state store and the ingestion queue are critical: if either is down the
service is unhealthy. Any other failing dependency only degrades it.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)

CRITICAL_DEPENDENCIES = frozenset({"state_store", "queue"})

HealthProbe = Callable[[], Awaitable[Any]]


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DependencyHealth:
    """
    Attributes:
        name: Dependency name (e.g. "state_store", "queue")
        healthy: Whether the dependency answered and reported healthy
        response_time_ms: Time the check took
        error: Failure description, if any
    """
    name: str
    healthy: bool
    response_time_ms: float
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "name": self.name,
            "healthy": self.healthy,
            "response_time_ms": round(self.response_time_ms, 2),
        }
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class HealthStatus:
    status: str  # "healthy", "degraded", "unhealthy"
    timestamp: str
    dependencies: list[DependencyHealth] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "timestamp": self.timestamp,
            "dependencies": [dep.to_dict() for dep in self.dependencies],
        }


def _is_healthy(result: Any) -> bool:
    # Probes return a bool, or a dict with a "status" key
    if isinstance(result, dict):
        return result.get("status") == "healthy"
    return bool(result)


class HealthCheckService:
    """
    Args:
        probes: dependency name -> async callable returning bool or a
            ``{"status": ...}`` dict
        check_timeout: Timeout in seconds per dependency check
    """

    def __init__(self, probes: Dict[str, HealthProbe], check_timeout: float = 5.0):
        self.probes = dict(probes)
        self.check_timeout = check_timeout

    async def check_readiness(self) -> HealthStatus:
        dependencies = list(await asyncio.gather(
            *(self._check(name, probe) for name, probe in self.probes.items())
        ))
        return HealthStatus(
            status=self._determine_overall_status(dependencies),
            timestamp=_utc_now(),
            dependencies=dependencies,
        )

    async def check_liveness(self) -> dict[str, Any]:
        """Process is running; no dependency is checked."""
        return {"status": "alive", "timestamp": _utc_now()}

    async def check_health(self) -> dict[str, Any]:
        return {"status": "ok", "timestamp": _utc_now()}

    async def _check(self, name: str, probe: HealthProbe) -> DependencyHealth:
        start_time = time.perf_counter()
        try:
            result = await asyncio.wait_for(probe(), timeout=self.check_timeout)
        except asyncio.TimeoutError:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_msg = f"{name} health check timed out after {self.check_timeout} seconds"
            logger.warning(error_msg)
            return DependencyHealth(name, False, elapsed_ms, error_msg)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            error_msg = f"{name} health check failed: {e}"
            logger.error(error_msg)
            return DependencyHealth(name, False, elapsed_ms, error_msg)

        elapsed_ms = (time.perf_counter() - start_time) * 1000
        if _is_healthy(result):
            logger.debug(f"{name} health check passed in {elapsed_ms:.2f}ms")
            return DependencyHealth(name, True, elapsed_ms)

        error = result.get("error") if isinstance(result, dict) else None
        logger.warning(f"{name} reported unhealthy after {elapsed_ms:.2f}ms")
        return DependencyHealth(name, False, elapsed_ms, error or f"{name} reported unhealthy")

    def _determine_overall_status(self, dependencies: list[DependencyHealth]) -> str:
        failing = {dep.name for dep in dependencies if not dep.healthy}
        if not failing:
            return "healthy"
        if failing & CRITICAL_DEPENDENCIES:
            return "unhealthy"
        return "degraded"
