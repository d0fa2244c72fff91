"""
Unit tests for the circuit breaker implementation.

These tests verify the circuit breaker state machine behavior:
- CLOSED -> OPEN after failure threshold
- OPEN -> HALF_OPEN after recovery timeout
- HALF_OPEN -> CLOSED on success
- HALF_OPEN -> OPEN on failure
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitOpenException,
    CircuitState,
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def _open(breaker: CircuitBreaker) -> None:
    failing = AsyncMock(side_effect=ConnectionError("provider down"))
    for _ in range(breaker.config.failure_threshold):
        with pytest.raises(ConnectionError):
            await breaker.execute(failing)


class TestCircuitBreakerConfig:

    def test_default_config(self):
        config = CircuitBreakerConfig()

        assert config.failure_threshold == 5
        assert config.recovery_timeout_seconds == 30.0
        assert config.half_open_max_calls == 1
        assert config.call_timeout_seconds is None

    def test_custom_config_is_used(self):
        breaker = CircuitBreaker("elevation", CircuitBreakerConfig(failure_threshold=2))

        assert breaker.name == "elevation"
        assert breaker.config.failure_threshold == 2
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0


class TestCircuitBreakerClosedState:
    """Tests for circuit breaker behavior in CLOSED state."""

    @pytest.mark.asyncio
    async def test_successful_call_in_closed_state(self):
        breaker = CircuitBreaker("test")
        mock_func = AsyncMock(return_value=12.5)

        result = await breaker.execute(mock_func, -122.4, latitude=37.8)

        assert result == 12.5
        mock_func.assert_called_once_with(-122.4, latitude=37.8)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self):
        breaker = CircuitBreaker("test")
        failing_func = AsyncMock(side_effect=Exception("Error"))

        for _ in range(2):
            with pytest.raises(Exception):
                await breaker.execute(failing_func)
        assert breaker.failure_count == 2

        await breaker.execute(AsyncMock(return_value="ok"))

        assert breaker.failure_count == 0
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_after_threshold_failures(self):
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=3))

        await _open(breaker)

        assert breaker.state == CircuitState.OPEN
        assert breaker.failure_count == 3


class TestCircuitBreakerOpenState:
    """Tests for circuit breaker behavior in OPEN state."""

    @pytest.mark.asyncio
    async def test_rejects_calls_when_open(self):
        clock = FakeClock()
        breaker = CircuitBreaker("geofence", CircuitBreakerConfig(failure_threshold=1), clock=clock)
        await _open(breaker)

        mock_func = AsyncMock()
        with pytest.raises(CircuitOpenException) as exc_info:
            await breaker.execute(mock_func)

        assert exc_info.value.circuit_name == "geofence"
        assert 0 < exc_info.value.retry_in_seconds <= 30
        assert "retry in" in str(exc_info.value)
        mock_func.assert_not_called()

    @pytest.mark.asyncio
    async def test_transitions_to_half_open_after_timeout(self):
        clock = FakeClock()
        config = CircuitBreakerConfig(failure_threshold=1, recovery_timeout_seconds=10)
        breaker = CircuitBreaker("test", config, clock=clock)
        await _open(breaker)

        clock.advance(10.5)
        result = await breaker.execute(AsyncMock(return_value="success"))

        assert result == "success"
        assert breaker.state == CircuitState.CLOSED


class TestCircuitBreakerHalfOpenState:

    @pytest.mark.asyncio
    async def test_failure_in_half_open_reopens(self):
        clock = FakeClock()
        config = CircuitBreakerConfig(failure_threshold=1, recovery_timeout_seconds=10)
        breaker = CircuitBreaker("test", config, clock=clock)
        await _open(breaker)
        clock.advance(11)

        with pytest.raises(ConnectionError):
            await breaker.execute(AsyncMock(side_effect=ConnectionError("still down")))

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenException):
            await breaker.execute(AsyncMock())

    @pytest.mark.asyncio
    async def test_only_one_probe_allowed(self):
        clock = FakeClock()
        config = CircuitBreakerConfig(failure_threshold=1, recovery_timeout_seconds=10)
        breaker = CircuitBreaker("test", config, clock=clock)
        await _open(breaker)
        clock.advance(11)

        release = asyncio.Event()

        async def slow_probe():
            await release.wait()
            return "ok"

        probe = asyncio.ensure_future(breaker.execute(slow_probe))
        await asyncio.sleep(0)
        assert breaker.state == CircuitState.HALF_OPEN

        with pytest.raises(CircuitOpenException):
            await breaker.execute(AsyncMock())

        release.set()
        assert await probe == "ok"
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_probe_frees_slot(self):
        clock = FakeClock()
        config = CircuitBreakerConfig(failure_threshold=1, recovery_timeout_seconds=10)
        breaker = CircuitBreaker("test", config, clock=clock)
        await _open(breaker)
        clock.advance(11)

        probe = asyncio.ensure_future(breaker.execute(asyncio.Event().wait))
        await asyncio.sleep(0)
        probe.cancel()
        with pytest.raises(asyncio.CancelledError):
            await probe

        assert breaker.state == CircuitState.HALF_OPEN
        assert await breaker.execute(AsyncMock(return_value="ok")) == "ok"
        assert breaker.state == CircuitState.CLOSED


class TestCircuitBreakerCallTimeout:

    @pytest.mark.asyncio
    async def test_hanging_calls_open_the_circuit(self):
        breaker = CircuitBreaker(
            "geofence", CircuitBreakerConfig(failure_threshold=2, call_timeout_seconds=0.01)
        )

        async def hang():
            await asyncio.sleep(1)

        for _ in range(2):
            with pytest.raises(asyncio.TimeoutError):
                await breaker.execute(hang)

        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpenException):
            await breaker.execute(hang)

    @pytest.mark.asyncio
    async def test_call_within_timeout_succeeds(self):
        breaker = CircuitBreaker("geofence", CircuitBreakerConfig(call_timeout_seconds=1.0))

        assert await breaker.execute(AsyncMock(return_value=["ZoneA"])) == ["ZoneA"]
        assert breaker.failure_count == 0

    @pytest.mark.asyncio
    async def test_timed_out_probe_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(
            "geofence",
            CircuitBreakerConfig(failure_threshold=1, call_timeout_seconds=0.01),
            clock=clock,
        )
        await _open(breaker)
        clock.advance(breaker.config.recovery_timeout_seconds)

        async def hang():
            await asyncio.sleep(1)

        with pytest.raises(asyncio.TimeoutError):
            await breaker.execute(hang)

        assert breaker.state == CircuitState.OPEN


class TestCircuitBreakerReset:

    @pytest.mark.asyncio
    async def test_reset_closes_circuit(self):
        breaker = CircuitBreaker("test", CircuitBreakerConfig(failure_threshold=1))
        await _open(breaker)

        breaker.reset()

        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert "closed" in repr(breaker)
