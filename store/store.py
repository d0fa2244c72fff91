"""
State store abstraction: latest enriched record per asset, with expiry.

A row is live while ``expiration > now``; a row whose expiration equals the
current time is already expired. Rows are keyed by asset id and each upsert
replaces the previous row for that id (last write wins by arrival order,
not by report timestamp).
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List

from ingestion.models import EnrichedRecord


class StateStore(ABC):
    """
    Contract for state store implementations.

    All methods are async so Redis-backed and in-process stores share one
    calling convention.
    """

    @abstractmethod
    async def upsert(self, record: EnrichedRecord) -> None:
        """
        Write or overwrite the row for ``record.id``.

        Idempotent: upserting the same record twice leaves one row.
        """

    @abstractmethod
    async def list_live(self, now: int) -> List[Dict[str, Any]]:
        """
        Every row with ``expiration > now``.

        Raises:
            Exception: Any connectivity error; callers must not return a
                partial listing.
        """

    @abstractmethod
    async def reap_expired(self, now: int) -> int:
        """Remove rows with ``expiration <= now``; returns how many were removed."""

    @abstractmethod
    async def health_check(self) -> bool:
        """True if the store is reachable."""

    async def close(self) -> None:
        return None


def is_live(item: Dict[str, Any], now: int) -> bool:
    return item.get("expiration", 0) > now
