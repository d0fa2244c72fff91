"""
State store for the latest enriched record per asset.

Provides:
- StateStore abstract contract
- RedisStateStore for deployments
- InMemoryStateStore for local runs and tests
"""

from store.store import StateStore, is_live
from store.redis_store import RedisStateStore
from store.memory_store import InMemoryStateStore

__all__ = [
    "StateStore",
    "is_live",
    "RedisStateStore",
    "InMemoryStateStore",
]
