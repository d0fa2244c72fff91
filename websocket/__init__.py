"""
WebSocket channels for live asset updates.
"""

from .connection_manager import ConnectionManager, get_connection_manager

__all__ = ["ConnectionManager", "get_connection_manager"]
