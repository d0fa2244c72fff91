"""
Redis Streams implementation of the ingestion queue.

Each partition is a stream named ``{stream_name}:{n}``; a message is routed
to a partition by a stable hash of its partition key (the asset id), so
reports for one asset stay in order. Consumers read through a consumer
group. Before reading new entries (id ``>``) a fetch claims entries that
have sat unacknowledged for ``claim_idle_seconds`` with XAUTOCLAIM, from any
consumer in the group, so a dead worker's pending entries are redelivered
to whichever worker is still running. Entries this instance holds (fetched,
not yet acked or released) are never handed out twice.
"""

import logging
import zlib
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Sequence, Set, Tuple

from redis.exceptions import ResponseError

from ingestion.queue import IngestionQueue, QueueMessage

logger = logging.getLogger(__name__)

PAYLOAD_FIELD = b"payload"


def _text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class RedisStreamQueue(IngestionQueue):
    """
    Attributes:
        redis_url: Redis connection URL
        stream_name: Stream name prefix (e.g. "assetingest")
        partitions: Number of partition streams
        group: Consumer group name
        consumer: This consumer's name within the group
        claim_idle_seconds: Idle time after which another consumer's pending
            entry is claimed
        client: redis.asyncio client (set by connect() or injected)
    """

    def __init__(
        self,
        redis_url: str,
        stream_name: str = "assetingest",
        partitions: int = 1,
        group: str = "enrichment",
        consumer: str = "worker-1",
        claim_idle_seconds: float = 300.0,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.stream_name = stream_name
        self.partitions = max(1, partitions)
        self.group = group
        self.consumer = consumer
        self.claim_idle_seconds = claim_idle_seconds
        self.client = client
        self._groups_ready = False
        self._held: Set[Tuple[str, str]] = set()
        self._released: Deque[QueueMessage] = deque()
        self._claim_cursors: Dict[str, str] = {}

    async def connect(self) -> None:
        """Create the client and ensure the consumer group exists on every partition."""
        if self.client is None:
            import redis.asyncio as redis
            self.client = redis.from_url(self.redis_url, decode_responses=False)
        await self._ensure_groups()

    async def disconnect(self) -> None:
        if self.client:
            await self.client.close()
            self.client = None
            self._groups_ready = False
            self._held.clear()
            self._released.clear()
            self._claim_cursors.clear()

    async def close(self) -> None:
        await self.disconnect()

    def stream_for(self, partition_key: Any) -> str:
        """Partition stream for a key; stable across processes."""
        index = zlib.crc32(str(partition_key).encode()) % self.partitions
        return f"{self.stream_name}:{index}"

    @property
    def streams(self) -> List[str]:
        return [f"{self.stream_name}:{n}" for n in range(self.partitions)]

    def _require_client(self):
        if not self.client:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self.client

    async def _ensure_groups(self) -> None:
        if self._groups_ready:
            return
        client = self._require_client()
        for stream in self.streams:
            try:
                await client.xgroup_create(stream, self.group, id="0", mkstream=True)
            except ResponseError as e:
                if "BUSYGROUP" not in str(e):
                    raise
        self._groups_ready = True

    async def publish(self, payload: bytes, partition_key: Any) -> str:
        client = self._require_client()
        stream = self.stream_for(partition_key)
        message_id = await client.xadd(stream, {PAYLOAD_FIELD: payload})
        return _text(message_id)

    async def _to_messages(self, stream: str, entries: Any) -> List[QueueMessage]:
        messages: List[QueueMessage] = []
        for entry_id, fields in entries or []:
            message_id = _text(entry_id)
            if (stream, message_id) in self._held:
                continue
            # Pending entries trimmed from the stream come back with no fields
            if not fields:
                await self.client.xack(stream, self.group, entry_id)
                continue
            messages.append(QueueMessage(
                message_id=message_id,
                payload=fields.get(PAYLOAD_FIELD, b""),
                partition=stream,
            ))
        return messages

    async def _claim_idle(self, stream: str, count: int) -> List[QueueMessage]:
        response = await self.client.xautoclaim(
            stream,
            self.group,
            self.consumer,
            min_idle_time=int(self.claim_idle_seconds * 1000),
            start_id=self._claim_cursors.get(stream, "0-0"),
            count=count,
        )
        self._claim_cursors[stream] = _text(response[0])
        messages = await self._to_messages(stream, response[1])
        if messages:
            logger.warning(
                f"Claimed {len(messages)} idle pending entries",
                extra={"extra_data": {
                    "stream": stream,
                    "consumer": self.consumer,
                    "message_ids": [m.message_id for m in messages],
                }}
            )
        return messages

    async def _read_new(self, stream: str, count: int) -> List[QueueMessage]:
        response = await self.client.xreadgroup(
            self.group, self.consumer, {stream: ">"}, count=count
        )
        messages: List[QueueMessage] = []
        for _, entries in response or []:
            messages.extend(await self._to_messages(stream, entries))
        return messages

    async def fetch_batch(self, max_messages: int) -> List[QueueMessage]:
        self._require_client()
        await self._ensure_groups()

        batch: List[QueueMessage] = []
        while self._released and len(batch) < max_messages:
            batch.append(self._released.popleft())

        fetched: List[QueueMessage] = []
        for stream in self.streams:
            if len(batch) + len(fetched) >= max_messages:
                break
            fetched.extend(await self._claim_idle(stream, max_messages - len(batch) - len(fetched)))

        for stream in self.streams:
            if len(batch) + len(fetched) >= max_messages:
                break
            fetched.extend(await self._read_new(stream, max_messages - len(batch) - len(fetched)))

        self._held.update((m.partition, m.message_id) for m in fetched)
        return batch + fetched

    async def ack(self, messages: Sequence[QueueMessage]) -> None:
        client = self._require_client()
        by_stream: Dict[str, List[str]] = {}
        for message in messages:
            by_stream.setdefault(message.partition, []).append(message.message_id)
        for stream, ids in by_stream.items():
            await client.xack(stream, self.group, *ids)
        for message in messages:
            self._held.discard((message.partition, message.message_id))

    async def release(self, messages: Sequence[QueueMessage]) -> None:
        # Entries stay in the pending list; a restarted worker claims them
        for message in messages:
            if (message.partition, message.message_id) in self._held:
                self._released.append(message)

    async def health_check(self) -> Dict[str, Any]:
        if not self.client:
            return {"status": "unhealthy", "backend": "redis", "error": "not connected"}
        try:
            await self.client.ping()
        except Exception as e:
            return {"status": "unhealthy", "backend": "redis", "error": str(e)}
        return {"status": "healthy", "backend": "redis", "streams": self.streams}
