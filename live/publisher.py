"""
Live publishers: best-effort fan-out of enriched records to subscribers.

Publishers receive the EnrichedRecord and serialize it for their own
transport. Publishing never aborts record processing. Implementations raise
on failure; the pipeline logs the error as PUBLISH_FAILED and moves on.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Optional, Sequence

from ingestion.models import EnrichedRecord
from websocket.connection_manager import ConnectionManager

logger = logging.getLogger(__name__)


class LivePublisher(ABC):
    name = "live"

    @abstractmethod
    async def publish(self, channel: str, record: EnrichedRecord) -> None:
        """Publish one enriched record to ``channel``."""

    async def close(self) -> None:
        return None


class RedisLivePublisher(LivePublisher):
    """Redis PUBLISH of the record JSON on the channel."""

    name = "redis"

    def __init__(self, redis_url: str, client: Optional[Any] = None):
        self.redis_url = redis_url
        self.client = client

    async def connect(self) -> None:
        if self.client is None:
            import redis.asyncio as redis
            self.client = redis.from_url(self.redis_url, decode_responses=True)

    async def close(self) -> None:
        if self.client:
            await self.client.close()
            self.client = None

    async def publish(self, channel: str, record: EnrichedRecord) -> None:
        if not self.client:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        await self.client.publish(channel, record.to_json())


class WebSocketLivePublisher(LivePublisher):
    """Broadcast to WebSocket clients subscribed to the channel."""

    name = "websocket"

    def __init__(self, connection_manager: ConnectionManager):
        self.connection_manager = connection_manager

    async def publish(self, channel: str, record: EnrichedRecord) -> None:
        await self.connection_manager.broadcast(channel, {
            "type": "asset_update",
            "data": record.to_item(),
        })


class FanoutLivePublisher(LivePublisher):
    """
    Publish to several publishers.

    Every publisher is attempted; if any failed, the first error is raised
    after the others have run.
    """

    name = "fanout"

    def __init__(self, publishers: Sequence[LivePublisher]):
        self.publishers = list(publishers)

    async def publish(self, channel: str, record: EnrichedRecord) -> None:
        first_error: Optional[Exception] = None
        for publisher in self.publishers:
            try:
                await publisher.publish(channel, record)
            except Exception as e:
                logger.warning(
                    f"{publisher.name} publisher failed",
                    extra={"extra_data": {
                        "publisher": publisher.name,
                        "channel": channel,
                        "error": str(e),
                    }}
                )
                if first_error is None:
                    first_error = e
        if first_error is not None:
            raise first_error

    async def close(self) -> None:
        for publisher in self.publishers:
            await publisher.close()
