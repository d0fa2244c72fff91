"""
Circuit breaker for enrichment provider calls.

Each enrichment provider (elevation, geofence) owns a breaker. While a
provider is failing, the breaker is OPEN and lookups fail immediately
instead of waiting out the provider timeout on every record; the batch
fails fast and is redelivered later. States:

- CLOSED: calls pass through; consecutive failures are counted
- OPEN: calls are rejected with CircuitOpenException
- HALF_OPEN: after the recovery timeout, one probe call is allowed
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreakerConfig:
    """
    Attributes:
        failure_threshold: Consecutive failures that open the circuit.
        recovery_timeout_seconds: Time spent OPEN before a probe is allowed.
        half_open_max_calls: Concurrent probes allowed while HALF_OPEN.
        call_timeout_seconds: Optional bound on each protected call; a call
            that exceeds it raises TimeoutError and counts as a failure.
    """
    failure_threshold: int = 5
    recovery_timeout_seconds: float = 30.0
    half_open_max_calls: int = 1
    call_timeout_seconds: Optional[float] = None


class CircuitOpenException(Exception):
    """Raised instead of calling the protected function while OPEN."""

    def __init__(self, circuit_name: str, retry_in_seconds: Optional[float] = None):
        self.circuit_name = circuit_name
        self.retry_in_seconds = retry_in_seconds

        message = f"Circuit breaker '{circuit_name}' is open"
        if retry_in_seconds is not None:
            message += f", retry in {int(retry_in_seconds)} seconds"
        super().__init__(message)


class CircuitBreaker:
    """
    Example:
        breaker = CircuitBreaker("elevation")
        elevation = await breaker.execute(provider.lookup, lon, lat)
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at: Optional[float] = None
        self._half_open_calls = 0
        self._lock = asyncio.Lock()

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    def _retry_in(self) -> Optional[float]:
        if self._opened_at is None:
            return None
        remaining = self.config.recovery_timeout_seconds - (self._clock() - self._opened_at)
        return remaining if remaining > 0 else None

    def _transition(self, new_state: CircuitState) -> None:
        if new_state is self._state:
            return
        logger.info(
            f"Circuit breaker '{self.name}' {self._state.value} -> {new_state.value}",
            extra={"extra_data": {
                "circuit": self.name,
                "from_state": self._state.value,
                "to_state": new_state.value,
                "failure_count": self._failure_count,
            }}
        )
        self._state = new_state
        if new_state is CircuitState.OPEN:
            self._opened_at = self._clock()
        self._half_open_calls = 0

    def _on_success(self) -> None:
        self._failure_count = 0
        self._transition(CircuitState.CLOSED)

    def _on_failure(self) -> None:
        if self._state is CircuitState.HALF_OPEN:
            self._transition(CircuitState.OPEN)
            return
        self._failure_count += 1
        if self._failure_count >= self.config.failure_threshold:
            self._transition(CircuitState.OPEN)

    async def execute(
        self,
        func: Callable[..., Awaitable[T]],
        *args: Any,
        **kwargs: Any
    ) -> T:
        """
        Call ``func`` under breaker protection.

        Raises:
            CircuitOpenException: If the circuit is OPEN, or HALF_OPEN with
                a probe already in flight
            asyncio.TimeoutError: If the call exceeds call_timeout_seconds
            Exception: Whatever the protected function raises
        """
        async with self._lock:
            if self._state is CircuitState.OPEN:
                if self._retry_in() is None:
                    self._transition(CircuitState.HALF_OPEN)
                else:
                    raise CircuitOpenException(self.name, self._retry_in())

            if self._state is CircuitState.HALF_OPEN:
                if self._half_open_calls >= self.config.half_open_max_calls:
                    raise CircuitOpenException(self.name, self._retry_in())
                self._half_open_calls += 1

        try:
            if self.config.call_timeout_seconds is not None:
                result = await asyncio.wait_for(
                    func(*args, **kwargs), timeout=self.config.call_timeout_seconds
                )
            else:
                result = await func(*args, **kwargs)
        except asyncio.CancelledError:
            # A cancelled probe says nothing about provider health.
            async with self._lock:
                if self._state is CircuitState.HALF_OPEN:
                    self._half_open_calls = max(0, self._half_open_calls - 1)
            raise
        except Exception:
            async with self._lock:
                self._on_failure()
            raise

        async with self._lock:
            self._on_success()
        return result

    def reset(self) -> None:
        """Force the breaker back to CLOSED."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._opened_at = None
        self._half_open_calls = 0

    def __repr__(self) -> str:
        return (
            f"CircuitBreaker(name={self.name!r}, state={self._state.value}, "
            f"failure_count={self._failure_count})"
        )
