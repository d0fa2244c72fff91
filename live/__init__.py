"""
Live publication of enriched records to real-time subscribers.
"""

from live.publisher import (
    FanoutLivePublisher,
    LivePublisher,
    RedisLivePublisher,
    WebSocketLivePublisher,
)

__all__ = [
    "FanoutLivePublisher",
    "LivePublisher",
    "RedisLivePublisher",
    "WebSocketLivePublisher",
]
