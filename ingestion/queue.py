"""
Ingestion queue contract and the in-process implementation.

The queue is partitioned by asset id and delivers at-least-once. A fetched
message stays in flight until it is acknowledged, or released for
redelivery after a failed batch.
"""

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict, deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, List, Sequence

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class QueueMessage:
    """
    One raw message as delivered by the queue.

    Attributes:
        message_id: Queue-assigned id, unique within its partition
        payload: Raw message body (JSON bytes)
        partition: Name of the partition/stream the message came from
    """
    message_id: str
    payload: bytes
    partition: str = "0"

    @property
    def reference(self) -> str:
        """Stable reference used in logs and error details."""
        return f"{self.partition}/{self.message_id}"


class IngestionQueue(ABC):
    """Durable, partitioned, at-least-once message queue."""

    @abstractmethod
    async def publish(self, payload: bytes, partition_key: Any) -> str:
        """Append a message to the partition selected by ``partition_key``."""

    @abstractmethod
    async def fetch_batch(self, max_messages: int) -> List[QueueMessage]:
        """
        Fetch up to ``max_messages`` messages.

        Released messages come back first. Messages still in flight are not
        delivered again by the same queue instance.
        """

    @abstractmethod
    async def ack(self, messages: Sequence[QueueMessage]) -> None:
        """Acknowledge messages so they are never delivered again."""

    @abstractmethod
    async def release(self, messages: Sequence[QueueMessage]) -> None:
        """Hand unacknowledged messages back so a later fetch redelivers them."""

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """Return a dict with at least a ``status`` key."""

    async def close(self) -> None:
        return None


class InMemoryQueue(IngestionQueue):
    """
    Single-process queue for local runs and tests.

    A single logical partition; ordering is publish order. Released
    messages go back to the front of the queue in their original order.
    """

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._ready: Deque[QueueMessage] = deque()
        self._in_flight: "OrderedDict[str, QueueMessage]" = OrderedDict()
        self._lock = asyncio.Lock()

    async def publish(self, payload: bytes, partition_key: Any) -> str:
        async with self._lock:
            message = QueueMessage(message_id=str(next(self._ids)), payload=payload)
            self._ready.append(message)
            return message.message_id

    async def fetch_batch(self, max_messages: int) -> List[QueueMessage]:
        async with self._lock:
            batch: List[QueueMessage] = []
            while len(batch) < max_messages and self._ready:
                message = self._ready.popleft()
                self._in_flight[message.message_id] = message
                batch.append(message)
            return batch

    async def ack(self, messages: Sequence[QueueMessage]) -> None:
        async with self._lock:
            for message in messages:
                self._in_flight.pop(message.message_id, None)

    async def release(self, messages: Sequence[QueueMessage]) -> None:
        async with self._lock:
            for message in reversed(messages):
                if self._in_flight.pop(message.message_id, None) is not None:
                    self._ready.appendleft(message)

    async def health_check(self) -> Dict[str, Any]:
        return {
            "status": "healthy",
            "backend": "memory",
            "ready": len(self._ready),
            "in_flight": len(self._in_flight),
        }

    def __len__(self) -> int:
        return len(self._ready) + len(self._in_flight)
