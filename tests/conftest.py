"""
Shared pytest fixtures and configuration for all tests.
"""
import asyncio
import gzip
import json
import os
from typing import Any, Callable, List, Optional, Tuple
from unittest.mock import AsyncMock, MagicMock

import pytest

# Hypothesis configuration for property-based testing
from hypothesis import Phase, Verbosity, settings

# Default profile: balanced for local development
settings.register_profile(
    "default",
    max_examples=100,
    verbosity=Verbosity.normal,
    deadline=None,  # Disable deadline for async tests
    print_blob=True,
)

# CI profile: more thorough testing for continuous integration
settings.register_profile(
    "ci",
    max_examples=200,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    derandomize=True,
)

# Debug profile: minimal examples for quick debugging
settings.register_profile(
    "debug",
    max_examples=10,
    verbosity=Verbosity.verbose,
    deadline=None,
    print_blob=True,
    phases=[Phase.explicit, Phase.reuse, Phase.generate],
)

# Fast profile: quick smoke tests
settings.register_profile(
    "fast",
    max_examples=20,
    verbosity=Verbosity.normal,
    deadline=None,
)

settings.load_profile(os.getenv("HYPOTHESIS_PROFILE", "default"))


from archive.writers import ArchiveWriter  # noqa: E402
from config.settings import Settings  # noqa: E402
from enrichment.providers import ElevationProvider, GeofenceProvider  # noqa: E402
from ingestion.queue import QueueMessage  # noqa: E402


class StubElevationProvider(ElevationProvider):
    """Returns a fixed elevation, or raises ``error`` when set."""

    def __init__(self, elevation: float = 12.5):
        self.elevation = elevation
        self.error: Optional[BaseException] = None
        self.delay: float = 0.0
        self.calls: List[Tuple[float, float]] = []

    async def lookup(self, longitude: float, latitude: float) -> float:
        self.calls.append((longitude, latitude))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.elevation


class StubGeofenceProvider(GeofenceProvider):
    """Returns a fixed list of containing geofence names."""

    def __init__(self, names: Optional[List[str]] = None):
        self.names = ["ZoneA"] if names is None else names
        self.error: Optional[BaseException] = None
        self.calls: List[Tuple[float, float]] = []

    async def lookup(self, longitude: float, latitude: float) -> List[Optional[str]]:
        self.calls.append((longitude, latitude))
        if self.error is not None:
            raise self.error
        return list(self.names)


class RecordingArchiveWriter(ArchiveWriter):
    """Keeps written batches in memory; fails the next ``fail_times`` writes."""

    name = "recording"

    def __init__(self):
        self.batches: List[Tuple[str, bytes]] = []
        self.fail_times = 0
        self.attempts = 0

    async def write_batch(self, key: str, body: bytes) -> None:
        self.attempts += 1
        if self.fail_times > 0:
            self.fail_times -= 1
            raise OSError("archive unavailable")
        self.batches.append((key, body))

    def records(self) -> List[dict]:
        rows = []
        for _, body in self.batches:
            for line in gzip.decompress(body).decode("utf-8").splitlines():
                rows.append(json.loads(line))
        return rows


@pytest.fixture
def elevation_provider() -> StubElevationProvider:
    return StubElevationProvider()


@pytest.fixture
def geofence_provider() -> StubGeofenceProvider:
    return StubGeofenceProvider()


@pytest.fixture
def archive_writer() -> RecordingArchiveWriter:
    return RecordingArchiveWriter()


@pytest.fixture
def make_message() -> Callable[..., QueueMessage]:
    """Build a QueueMessage from a dict (JSON-encoded) or raw bytes."""
    counter = {"n": 0}

    def _make(body: Any, partition: str = "0") -> QueueMessage:
        counter["n"] += 1
        payload = body if isinstance(body, bytes) else json.dumps(body).encode("utf-8")
        return QueueMessage(message_id=str(counter["n"]), payload=payload, partition=partition)

    return _make


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Development settings with in-memory backends and a temp archive directory."""
    return Settings(
        _env_file=None,
        mapbox_access_token="test-token",
        archive_directory=str(tmp_path / "archive"),
        rate_limit_requests_per_minute=10000,
    )


@pytest.fixture
def mock_redis() -> MagicMock:
    """Mock redis.asyncio client with a transactional pipeline."""
    mock = MagicMock()
    mock.get = AsyncMock(return_value=None)
    mock.mget = AsyncMock(return_value=[])
    mock.zrangebyscore = AsyncMock(return_value=[])
    mock.zremrangebyscore = AsyncMock(return_value=0)
    mock.publish = AsyncMock(return_value=1)
    mock.ping = AsyncMock(return_value=True)
    mock.close = AsyncMock()
    mock.xadd = AsyncMock(return_value=b"1700000000000-0")
    mock.xreadgroup = AsyncMock(return_value=[])
    mock.xack = AsyncMock(return_value=1)
    mock.xgroup_create = AsyncMock(return_value=True)
    mock.xautoclaim = AsyncMock(return_value=[b"0-0", [], []])

    pipe = MagicMock()
    pipe.__aenter__ = AsyncMock(return_value=pipe)
    pipe.__aexit__ = AsyncMock(return_value=False)
    pipe.execute = AsyncMock(return_value=[True, 1])
    mock.pipeline = MagicMock(return_value=pipe)
    mock.pipe = pipe
    return mock


@pytest.fixture
def sample_report() -> dict:
    """Position report used across tests."""
    return {
        "id": 1,
        "coordinates": [-122.4, 37.8],
        "timestamp": 1700000000,
        "speed": 12,
    }
