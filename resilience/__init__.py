"""
Resilience patterns for the asset tracking pipeline.

Circuit breakers guard enrichment provider calls; retry with exponential
backoff guards archive flushes.
"""

from resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenException,
    CircuitState,
)
from resilience.retry import (
    RetryConfig,
    RetryExhaustedException,
    calculate_delay,
    retry_async,
)

__all__ = [
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitOpenException",
    "CircuitState",
    # Retry
    "RetryConfig",
    "RetryExhaustedException",
    "calculate_delay",
    "retry_async",
]
