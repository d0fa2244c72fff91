"""
Redis-backed state store.

Each asset row is a JSON string at ``asset:{id}`` written with
``EXAT expiration`` so Redis drops it at its expiration time. A sorted set
(``asset:expiry``) indexes ids by expiration so live rows can be listed
without a keyspace SCAN, and so lagging index entries can be reaped.
"""

import json
import logging
import time
from typing import Any, Dict, List, Optional

from ingestion.models import EnrichedRecord
from store.store import StateStore, is_live

logger = logging.getLogger(__name__)

DEFAULT_KEY_PREFIX = "asset"


class RedisStateStore(StateStore):
    """
    Attributes:
        redis_url: Redis connection URL (e.g., "redis://localhost:6379/0")
        key_prefix: Namespace for row keys and the expiry index
        client: Redis async client (set by connect() or injected)
    """

    def __init__(
        self,
        redis_url: str,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        client: Optional[Any] = None,
    ):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.client = client

    async def connect(self) -> None:
        if self.client is None:
            import redis.asyncio as redis
            self.client = redis.from_url(self.redis_url, decode_responses=True)

    async def disconnect(self) -> None:
        if self.client:
            await self.client.close()
            self.client = None

    async def close(self) -> None:
        await self.disconnect()

    def _require_client(self):
        if not self.client:
            raise RuntimeError("Redis client not connected. Call connect() first.")
        return self.client

    def _key(self, record_id: Any) -> str:
        return f"{self.key_prefix}:{record_id}"

    @property
    def index_key(self) -> str:
        return f"{self.key_prefix}:expiry"

    async def upsert(self, record: EnrichedRecord, now: Optional[int] = None) -> None:
        """
        Write the row with an absolute expiry.

        A record that is already expired replaces any previous row with
        nothing: the key is deleted and dropped from the index.
        """
        client = self._require_client()
        key = self._key(record.id)
        member = str(record.id)
        now = int(time.time()) if now is None else now

        async with client.pipeline(transaction=True) as pipe:
            if record.expiration <= now:
                pipe.delete(key)
                pipe.zrem(self.index_key, member)
            else:
                pipe.set(key, json.dumps(record.to_item()), exat=record.expiration)
                pipe.zadd(self.index_key, {member: record.expiration})
            await pipe.execute()

    async def list_live(self, now: int) -> List[Dict[str, Any]]:
        client = self._require_client()
        ids = await client.zrangebyscore(self.index_key, f"({now}", "+inf")
        if not ids:
            return []

        values = await client.mget([self._key(record_id) for record_id in ids])
        rows: List[Dict[str, Any]] = []
        for value in values:
            # Key expired between the index read and MGET
            if value is None:
                continue
            item = json.loads(value)
            if is_live(item, now):
                rows.append(item)
        return rows

    async def reap_expired(self, now: int) -> int:
        """Drop index entries for rows Redis has already expired."""
        client = self._require_client()
        removed = await client.zremrangebyscore(self.index_key, "-inf", now)
        if removed:
            logger.debug(
                "Reaped expired asset index entries",
                extra={"extra_data": {"removed": removed, "now": now}}
            )
        return removed

    async def health_check(self) -> bool:
        if not self.client:
            return False
        try:
            return await self.client.ping() is True
        except Exception:
            return False
