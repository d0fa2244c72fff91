"""
Runtime wiring: builds a pipeline and its clients from Settings and runs it.

The runtime owns every long-lived client (queue, state store, providers,
archive sink, publishers) and the background tasks that use them: the queue
consumer, the archive flusher and the state store reaper.
"""

import asyncio
import logging
import socket
import time
from typing import Dict, List, Optional

from archive.sink import ArchiveSink
from archive.writers import ArchiveWriter, FilesystemArchiveWriter, S3ArchiveWriter
from config.settings import Settings
from enrichment.engine import EnrichmentEngine
from enrichment.providers import TerrainRGBElevationProvider, TilequeryGeofenceProvider
from errors.exceptions import resource_not_found
from ingestion.consumer import QueueConsumer
from ingestion.queue import IngestionQueue, InMemoryQueue
from ingestion.redis_queue import RedisStreamQueue
from live.publisher import (
    FanoutLivePublisher,
    LivePublisher,
    RedisLivePublisher,
    WebSocketLivePublisher,
)
from pipeline.pipeline import AssetPipeline, PipelineConfig, id_filter
from store.memory_store import InMemoryStateStore
from store.redis_store import RedisStateStore
from store.store import StateStore
from websocket.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)

REAP_INTERVAL_SECONDS = 60.0
# Providers time out their own calls inside the circuit breaker; the
# engine bound only catches calls that ignore that limit
PROVIDER_TIMEOUT_GRACE_SECONDS = 1.0


def build_pipeline_config(settings: Settings) -> PipelineConfig:
    record_filter = None
    if settings.pipeline_asset_ids is not None:
        record_filter = id_filter(settings.pipeline_asset_ids)

    output_fields = None
    if settings.pipeline_output_fields is not None:
        output_fields = tuple(settings.pipeline_output_fields)

    return PipelineConfig(
        name=settings.pipeline_name,
        ttl_seconds=settings.ttl_seconds,
        channel=settings.live_channel,
        record_filter=record_filter,
        output_fields=output_fields,
    )


def build_queue(settings: Settings) -> IngestionQueue:
    if settings.queue_backend == "redis":
        return RedisStreamQueue(
            settings.redis_url,
            stream_name=settings.queue_stream_name,
            partitions=settings.queue_partitions,
            group=settings.queue_consumer_group,
            consumer=f"{settings.pipeline_name}-{socket.gethostname()}",
            claim_idle_seconds=settings.queue_claim_idle_seconds,
        )
    return InMemoryQueue()


def build_state_store(settings: Settings) -> StateStore:
    if settings.state_store_type == "redis":
        return RedisStateStore(settings.redis_url, key_prefix=f"asset:{settings.pipeline_name}")
    return InMemoryStateStore()


def build_archive_writer(settings: Settings) -> ArchiveWriter:
    if settings.archive_backend == "s3":
        return S3ArchiveWriter(settings.archive_bucket)
    return FilesystemArchiveWriter(settings.archive_directory)


def build_engine(settings: Settings) -> EnrichmentEngine:
    return EnrichmentEngine(
        TerrainRGBElevationProvider(
            settings.elevation_tile_template,
            settings.mapbox_access_token,
            zoom=settings.elevation_zoom,
            timeout=settings.provider_timeout_seconds,
        ),
        TilequeryGeofenceProvider(
            settings.geofence_endpoint,
            settings.geofence_tileset_id,
            settings.mapbox_access_token,
            timeout=settings.provider_timeout_seconds,
        ),
        provider_timeout=settings.provider_timeout_seconds + PROVIDER_TIMEOUT_GRACE_SECONDS,
    )


def build_publisher(settings: Settings, connection_manager: ConnectionManager) -> LivePublisher:
    publishers: List[LivePublisher] = [WebSocketLivePublisher(connection_manager)]
    if settings.redis_url:
        publishers.append(RedisLivePublisher(settings.redis_url))
    return FanoutLivePublisher(publishers)


class PipelineRuntime:
    """
    Runs one or more pipelines fed by one ingestion queue.

    Pipelines are addressed by name for the query API.
    """

    def __init__(
        self,
        queue: IngestionQueue,
        pipelines: List[AssetPipeline],
        batch_size: int = 25,
        invocation_timeout: float = 30.0,
        poll_interval: float = 1.0,
        reap_interval: float = REAP_INTERVAL_SECONDS,
    ):
        self.queue = queue
        self.pipelines: Dict[str, AssetPipeline] = {p.name: p for p in pipelines}
        self.consumers = [
            QueueConsumer(
                queue, pipeline,
                batch_size=batch_size,
                invocation_timeout=invocation_timeout,
                poll_interval=poll_interval,
            )
            for pipeline in pipelines
        ]
        self.reap_interval = reap_interval
        self._tasks: List[asyncio.Task] = []
        self._started = False

    @property
    def default_pipeline(self) -> AssetPipeline:
        return next(iter(self.pipelines.values()))

    def get_pipeline(self, name: str) -> AssetPipeline:
        try:
            return self.pipelines[name]
        except KeyError:
            raise resource_not_found(
                f"Pipeline '{name}' not found",
                details={"pipeline": name, "available": sorted(self.pipelines)}
            ) from None

    async def connect(self) -> None:
        """Connect every Redis-backed client."""
        clients = [self.queue]
        for pipeline in self.pipelines.values():
            clients.append(pipeline.state_store)
            publisher = pipeline.publisher
            clients.extend(getattr(publisher, "publishers", [publisher]))
        for client in clients:
            connect = getattr(client, "connect", None)
            if connect is not None:
                await connect()

    async def start(self, consume: bool = True) -> None:
        if self._started:
            return
        await self.connect()
        for pipeline in self.pipelines.values():
            pipeline.archive_sink.start()
            self._tasks.append(asyncio.create_task(
                self._reap_loop(pipeline), name=f"reaper-{pipeline.name}"
            ))
        if consume:
            for consumer in self.consumers:
                self._tasks.append(asyncio.create_task(
                    consumer.run_forever(), name=f"consumer-{consumer.pipeline.name}"
                ))
        self._started = True
        logger.info(
            "Pipeline runtime started",
            extra={"extra_data": {"pipelines": list(self.pipelines), "consuming": consume}}
        )

    async def _reap_loop(self, pipeline: AssetPipeline) -> None:
        while True:
            await asyncio.sleep(self.reap_interval)
            try:
                await pipeline.state_store.reap_expired(int(time.time()))
            except Exception as e:
                logger.warning(
                    "State store reap failed",
                    extra={"extra_data": {"pipeline": pipeline.name, "error": str(e)}}
                )

    async def stop(self) -> None:
        for consumer in self.consumers:
            consumer.stop()
        for task in self._tasks:
            if task.get_name().startswith("reaper-"):
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

        # Final flushes settle the acknowledgements held on them; the queue
        # must stay open until those are acked or released
        for pipeline in self.pipelines.values():
            await pipeline.archive_sink.close()
        for consumer in self.consumers:
            await consumer.drain()

        for pipeline in self.pipelines.values():
            await pipeline.publisher.close()
            await pipeline.state_store.close()
            for provider in (pipeline.engine.elevation_provider, pipeline.engine.geofence_provider):
                aclose = getattr(provider, "aclose", None)
                if aclose is not None:
                    await aclose()
        await self.queue.close()
        self._started = False
        logger.info("Pipeline runtime stopped")


def build_runtime(
    settings: Settings,
    connection_manager: ConnectionManager,
    queue: Optional[IngestionQueue] = None,
) -> PipelineRuntime:
    """Build the runtime for the single pipeline described by settings."""
    config = build_pipeline_config(settings)
    pipeline = AssetPipeline(
        config=config,
        engine=build_engine(settings),
        state_store=build_state_store(settings),
        archive_sink=ArchiveSink(
            build_archive_writer(settings),
            pipeline_name=config.name,
            prefix=settings.archive_prefix,
            buffer_interval_seconds=settings.archive_buffer_interval_seconds,
            buffer_size_bytes=settings.archive_buffer_size_bytes,
        ),
        publisher=build_publisher(settings, connection_manager),
    )
    return PipelineRuntime(
        queue or build_queue(settings),
        [pipeline],
        batch_size=settings.queue_batch_size,
        invocation_timeout=settings.invocation_timeout_seconds,
        poll_interval=settings.queue_poll_interval_seconds,
    )
