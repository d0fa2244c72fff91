"""
Integration test configuration and fixtures.

The application is built around a real pipeline runtime with in-memory
backends. Elevation, geofence and archive I/O use the recording stubs from the
top-level conftest, so the HTTP and WebSocket surfaces are exercised end to end
without network access.
"""

import asyncio
from typing import Any, Callable, Dict, List

import pytest
from fastapi.testclient import TestClient

from archive.sink import ArchiveSink
from enrichment.engine import EnrichmentEngine
from ingestion.models import EnrichedRecord
from ingestion.queue import InMemoryQueue
from live.publisher import FanoutLivePublisher, WebSocketLivePublisher
from main import create_app
from middleware.rate_limiter import limiter
from pipeline.pipeline import AssetPipeline, PipelineConfig
from pipeline.runtime import PipelineRuntime
from store.memory_store import InMemoryStateStore
from websocket.connection_manager import ConnectionManager


@pytest.fixture
def connection_manager() -> ConnectionManager:
    return ConnectionManager()


@pytest.fixture
def state_store() -> InMemoryStateStore:
    return InMemoryStateStore()


@pytest.fixture
def ingestion_queue() -> InMemoryQueue:
    return InMemoryQueue()


@pytest.fixture
def runtime(
    ingestion_queue, state_store, connection_manager,
    elevation_provider, geofence_provider, archive_writer,
) -> PipelineRuntime:
    pipeline = AssetPipeline(
        PipelineConfig(name="assets"),
        EnrichmentEngine(elevation_provider, geofence_provider),
        state_store,
        ArchiveSink(archive_writer, pipeline_name="assets"),
        FanoutLivePublisher([WebSocketLivePublisher(connection_manager)]),
    )
    return PipelineRuntime(ingestion_queue, [pipeline], poll_interval=0.01)


@pytest.fixture
def app(test_settings, runtime, connection_manager):
    limiter.reset()
    return create_app(test_settings, runtime=runtime, connection_manager=connection_manager)


@pytest.fixture
def client(app):
    """Client without the lifespan: the runtime is built but not started."""
    return TestClient(app)


@pytest.fixture
def live_client(app):
    """Client with the lifespan running, so the queue is consumed."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def seed(state_store) -> Callable[[List[Dict[str, Any]]], None]:
    """Write enriched rows straight into the state store."""
    def _seed(rows: List[Dict[str, Any]]) -> None:
        async def write():
            for row in rows:
                await state_store.upsert(EnrichedRecord(**row))

        asyncio.run(write())

    return _seed
