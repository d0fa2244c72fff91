"""
WebSocket connection manager for live asset channels.

Clients subscribe to a named channel (e.g. "frontend") and receive every
enriched record published to that channel as a JSON message.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class ConnectionManager:
    """
    Tracks WebSocket subscribers per channel and broadcasts to them.

    Attributes:
        channels: channel name -> set of connected sockets
    """

    def __init__(self):
        self.channels: Dict[str, Set[WebSocket]] = {}
        self._lock = asyncio.Lock()
        self._logger = logging.getLogger(__name__)

    async def connect(self, websocket: WebSocket, channel: str) -> None:
        """Accept a socket and subscribe it to ``channel``."""
        await websocket.accept()
        async with self._lock:
            self.channels.setdefault(channel, set()).add(websocket)
            count = len(self.channels[channel])

        self._logger.info(
            f"WebSocket client subscribed to '{channel}'",
            extra={"extra_data": {
                "channel": channel,
                "channel_connections": count,
                "client_host": websocket.client.host if websocket.client else "unknown"
            }}
        )

        await self._send_to_client(websocket, {
            "type": "connection",
            "status": "connected",
            "channel": channel,
            "timestamp": _utc_now()
        })

    async def disconnect(self, websocket: WebSocket, channel: str) -> None:
        async with self._lock:
            subscribers = self.channels.get(channel)
            if subscribers is not None:
                subscribers.discard(websocket)
                if not subscribers:
                    del self.channels[channel]

        self._logger.info(
            f"WebSocket client left '{channel}'",
            extra={"extra_data": {"channel": channel}}
        )

    async def _send_to_client(self, websocket: WebSocket, data: dict) -> bool:
        try:
            await websocket.send_json(data)
            return True
        except Exception as e:
            self._logger.warning(
                f"Failed to send to WebSocket client: {e}",
                extra={"extra_data": {"error": str(e)}}
            )
            return False

    async def broadcast(self, channel: str, message: dict) -> int:
        """
        Send ``message`` to every subscriber of ``channel``.

        Sockets that fail to receive are dropped from the channel.

        Returns:
            Number of clients that received the message
        """
        async with self._lock:
            connections = list(self.channels.get(channel, ()))

        if not connections:
            return 0

        results = await asyncio.gather(
            *(self._send_to_client(ws, message) for ws in connections),
            return_exceptions=True
        )

        delivered = 0
        stale: List[WebSocket] = []
        for websocket, result in zip(connections, results):
            if result is True:
                delivered += 1
            else:
                stale.append(websocket)

        if stale:
            async with self._lock:
                subscribers = self.channels.get(channel, set())
                for websocket in stale:
                    subscribers.discard(websocket)
            self._logger.info(
                f"Removed {len(stale)} disconnected clients from '{channel}'",
                extra={"extra_data": {"channel": channel, "removed_count": len(stale)}}
            )

        return delivered

    def get_connection_count(self, channel: Optional[str] = None) -> int:
        if channel is not None:
            return len(self.channels.get(channel, ()))
        return sum(len(subscribers) for subscribers in self.channels.values())


_connection_manager: Optional[ConnectionManager] = None


def get_connection_manager() -> ConnectionManager:
    """Process-wide ConnectionManager, created on first use."""
    global _connection_manager
    if _connection_manager is None:
        _connection_manager = ConnectionManager()
    return _connection_manager
