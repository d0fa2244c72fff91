"""
Enrichment of position reports with elevation and geofence data.
"""

from enrichment.engine import INSIDE, OUTSIDE, EnrichmentEngine
from enrichment.providers import (
    ElevationProvider,
    GeofenceProvider,
    ProviderError,
    TerrainRGBElevationProvider,
    TilequeryGeofenceProvider,
    decode_terrain_rgb,
    tile_coordinates,
)

__all__ = [
    "INSIDE",
    "OUTSIDE",
    "EnrichmentEngine",
    "ElevationProvider",
    "GeofenceProvider",
    "ProviderError",
    "TerrainRGBElevationProvider",
    "TilequeryGeofenceProvider",
    "decode_terrain_rgb",
    "tile_coordinates",
]
