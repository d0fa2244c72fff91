"""
In-process state store for local runs and tests.
"""

import asyncio
from typing import Any, Dict, List

from ingestion.models import EnrichedRecord
from store.store import StateStore, is_live


class InMemoryStateStore(StateStore):
    """Dict keyed by asset id; expired rows are filtered on read and reaped on demand."""

    def __init__(self) -> None:
        self._rows: Dict[int, Dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    async def upsert(self, record: EnrichedRecord) -> None:
        async with self._lock:
            self._rows[record.id] = record.to_item()

    async def list_live(self, now: int) -> List[Dict[str, Any]]:
        async with self._lock:
            return [dict(item) for item in self._rows.values() if is_live(item, now)]

    async def reap_expired(self, now: int) -> int:
        async with self._lock:
            expired = [key for key, item in self._rows.items() if not is_live(item, now)]
            for key in expired:
                del self._rows[key]
            return len(expired)

    async def get(self, record_id: int) -> Dict[str, Any]:
        """Raw row for an id, live or not; KeyError if absent."""
        async with self._lock:
            return dict(self._rows[record_id])

    async def health_check(self) -> bool:
        return True

    def __len__(self) -> int:
        return len(self._rows)
