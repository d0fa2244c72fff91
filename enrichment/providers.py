"""
Elevation and geofence providers backed by Mapbox-compatible HTTP APIs.

Elevation comes from terrain-RGB raster tiles: the tile covering the point
at a fixed zoom is fetched, the pixel under the point is read, and its
colour is decoded as height in meters. Geofence containment comes from a
tilequery endpoint that returns the polygon features containing the point.
"""

import logging
import math
from abc import ABC, abstractmethod
from io import BytesIO
from typing import Any, Dict, List, Optional, Tuple

import httpx
from PIL import Image

from resilience.circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from telemetry.service import get_telemetry_service

logger = logging.getLogger(__name__)

# Web-mercator latitude limit
MAX_MERCATOR_LATITUDE = 85.0511287798066


class ProviderError(Exception):
    """A provider call failed (non-2xx, network error or undecodable body)."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"{provider}: {message}")


class ElevationProvider(ABC):
    name = "elevation"

    @abstractmethod
    async def lookup(self, longitude: float, latitude: float) -> float:
        """Elevation in meters at the point."""


class GeofenceProvider(ABC):
    name = "geofence"

    @abstractmethod
    async def lookup(self, longitude: float, latitude: float) -> List[Optional[str]]:
        """Names of the geofence features containing the point, in provider order."""


def tile_coordinates(longitude: float, latitude: float, zoom: int) -> Tuple[int, int, float, float]:
    """
    Web-mercator tile containing a point.

    Returns:
        (tile_x, tile_y, frac_x, frac_y) where frac_* is the position of the
        point inside the tile in [0, 1)
    """
    n = 2 ** zoom
    lat = max(-MAX_MERCATOR_LATITUDE, min(MAX_MERCATOR_LATITUDE, latitude))
    lat_rad = math.radians(lat)

    x = (longitude + 180.0) / 360.0 * n
    y = (1.0 - math.asinh(math.tan(lat_rad)) / math.pi) / 2.0 * n

    tile_x = min(max(int(math.floor(x)), 0), n - 1)
    tile_y = min(max(int(math.floor(y)), 0), n - 1)
    return tile_x, tile_y, min(max(x - tile_x, 0.0), 1.0), min(max(y - tile_y, 0.0), 1.0)


def decode_terrain_rgb(red: int, green: int, blue: int) -> float:
    """Height in meters encoded by a terrain-RGB pixel, to 0.1 m."""
    return round(-10000 + (red * 256 * 256 + green * 256 + blue) * 0.1, 1)


def elevation_from_tile(png: bytes, frac_x: float, frac_y: float) -> float:
    """Decode the terrain-RGB pixel at a fractional position inside a tile."""
    with Image.open(BytesIO(png)) as image:
        rgb = image.convert("RGB")
        px = min(int(frac_x * rgb.width), rgb.width - 1)
        py = min(int(frac_y * rgb.height), rgb.height - 1)
        red, green, blue = rgb.getpixel((px, py))
    return decode_terrain_rgb(red, green, blue)


class _HttpProvider:
    """Shared HTTP plumbing: pooled client, circuit breaker, spans."""

    name = "provider"

    def __init__(
        self,
        access_token: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.access_token = access_token
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self.breaker = breaker or CircuitBreaker(
            self.name, CircuitBreakerConfig(call_timeout_seconds=timeout)
        )

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get(self, url: str) -> httpx.Response:
        try:
            response = await self.client.get(url, params={"access_token": self.access_token})
        except httpx.RequestError as e:
            raise ProviderError(self.name, f"request failed: {type(e).__name__}: {e}") from e
        if response.status_code < 200 or response.status_code >= 300:
            raise ProviderError(self.name, f"HTTP {response.status_code} from {url}")
        return response

    async def _guarded(self, operation: str, func, *args: Any) -> Any:
        telemetry = get_telemetry_service()
        if telemetry is None:
            return await self.breaker.execute(func, *args)
        with telemetry.create_external_service_span(self.name, operation):
            with telemetry.timed(f"provider.{self.name}.duration_ms"):
                return await self.breaker.execute(func, *args)


class TerrainRGBElevationProvider(_HttpProvider, ElevationProvider):
    """
    Elevation from terrain-RGB tiles.

    Args:
        tile_template: URL with {z}, {x} and {y} placeholders
        access_token: Appended as the access_token query parameter
        zoom: Tile zoom level
    """

    name = "elevation"

    def __init__(
        self,
        tile_template: str,
        access_token: str,
        zoom: int = 14,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(access_token, timeout=timeout, client=client, breaker=breaker)
        self.tile_template = tile_template
        self.zoom = zoom

    def tile_url(self, tile_x: int, tile_y: int) -> str:
        return (
            self.tile_template
            .replace("{z}", str(self.zoom))
            .replace("{x}", str(tile_x))
            .replace("{y}", str(tile_y))
        )

    async def _fetch(self, longitude: float, latitude: float) -> float:
        tile_x, tile_y, frac_x, frac_y = tile_coordinates(longitude, latitude, self.zoom)
        response = await self._get(self.tile_url(tile_x, tile_y))
        try:
            return elevation_from_tile(response.content, frac_x, frac_y)
        except (OSError, ValueError) as e:
            raise ProviderError(self.name, f"undecodable tile: {e}") from e

    async def lookup(self, longitude: float, latitude: float) -> float:
        return await self._guarded("lookup", self._fetch, longitude, latitude)


class TilequeryGeofenceProvider(_HttpProvider, GeofenceProvider):
    """
    Geofence containment via ``GET {endpoint}/v4/{tileset}/tilequery/{lon},{lat}.json``.

    Every returned feature is a geofence containing the point.
    """

    name = "geofence"

    def __init__(
        self,
        endpoint: str,
        tileset_id: str,
        access_token: str,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        super().__init__(access_token, timeout=timeout, client=client, breaker=breaker)
        self.endpoint = endpoint.rstrip("/")
        self.tileset_id = tileset_id

    def query_url(self, longitude: float, latitude: float) -> str:
        return f"{self.endpoint}/v4/{self.tileset_id}/tilequery/{longitude},{latitude}.json"

    async def _fetch(self, longitude: float, latitude: float) -> List[Optional[str]]:
        response = await self._get(self.query_url(longitude, latitude))
        try:
            body: Dict[str, Any] = response.json()
        except ValueError as e:
            raise ProviderError(self.name, f"invalid JSON body: {e}") from e

        features = body.get("features") if isinstance(body, dict) else None
        if not isinstance(features, list):
            raise ProviderError(self.name, "response has no feature list")

        return [
            (feature.get("properties") or {}).get("name")
            for feature in features
            if isinstance(feature, dict)
        ]

    async def lookup(self, longitude: float, latitude: float) -> List[Optional[str]]:
        return await self._guarded("lookup", self._fetch, longitude, latitude)
