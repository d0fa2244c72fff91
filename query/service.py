"""
Query service: the current live asset set as a GeoJSON FeatureCollection.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional

from errors.exceptions import state_store_unavailable
from store.store import StateStore

logger = logging.getLogger(__name__)

NO_ASSETS_MESSAGE = "No assets are currently available."

# Fields that become the Point geometry instead of properties
GEOMETRY_FIELDS = ("longitude", "latitude")


def to_feature(item: Dict[str, Any]) -> Dict[str, Any]:
    """
    One state row as a GeoJSON Feature.

    Rows without coordinates get a null geometry.
    """
    longitude = item.get("longitude")
    latitude = item.get("latitude")
    properties = {k: v for k, v in item.items() if k not in GEOMETRY_FIELDS}

    geometry: Optional[Dict[str, Any]] = None
    if longitude is not None and latitude is not None:
        geometry = {"type": "Point", "coordinates": [longitude, latitude]}

    return {"type": "Feature", "geometry": geometry, "properties": properties}


class QueryService:
    """
    Args:
        state_store: Store to read live rows from
        clock: Current unix time in seconds
    """

    def __init__(self, state_store: StateStore, clock: Callable[[], float] = time.time):
        self.state_store = state_store
        self._clock = clock

    async def list_assets(self) -> Dict[str, Any]:
        """
        Every live asset.

        Returns:
            A FeatureCollection dict, or ``{"message": NO_ASSETS_MESSAGE}``
            when no asset is live

        Raises:
            AppException: STATE_STORE_UNAVAILABLE if the scan fails
        """
        now = int(self._clock())
        try:
            rows: List[Dict[str, Any]] = await self.state_store.list_live(now)
        except Exception as e:
            logger.error(
                "State store scan failed",
                extra={"extra_data": {"error_type": type(e).__name__, "error": str(e)}}
            )
            raise state_store_unavailable(
                "Asset state is temporarily unavailable",
                details={"cause": type(e).__name__},
            ) from e

        if not rows:
            return {"message": NO_ASSETS_MESSAGE}

        rows.sort(key=lambda row: row.get("id", 0))
        return {
            "type": "FeatureCollection",
            "features": [to_feature(row) for row in rows],
        }
