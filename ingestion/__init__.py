"""
Ingestion: position report models, the ingestion queue and its consumer.
"""

from ingestion.models import (
    EnrichedRecord,
    PositionReport,
    RESERVED_FIELDS,
    decode_message,
    parse_report,
)
from ingestion.queue import IngestionQueue, InMemoryQueue, QueueMessage
from ingestion.redis_queue import RedisStreamQueue
from ingestion.consumer import QueueConsumer

__all__ = [
    "EnrichedRecord",
    "PositionReport",
    "RESERVED_FIELDS",
    "decode_message",
    "parse_report",
    "IngestionQueue",
    "InMemoryQueue",
    "QueueMessage",
    "RedisStreamQueue",
    "QueueConsumer",
]
