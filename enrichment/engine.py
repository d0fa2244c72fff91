"""
Enrichment engine: turns a PositionReport into an EnrichedRecord.

For a report with coordinates both providers are queried concurrently and
each call is bounded by the provider timeout. If either provider fails or
times out the whole enrichment fails; there is no partially enriched record.
Reports without coordinates are enriched without any provider call.
"""

import asyncio
import logging
from typing import Any, Awaitable, Iterable, Optional

from errors.exceptions import enrichment_failed
from enrichment.providers import ElevationProvider, GeofenceProvider
from ingestion.models import EnrichedRecord, PositionReport

logger = logging.getLogger(__name__)

INSIDE = "INSIDE"
OUTSIDE = "OUTSIDE"


class EnrichmentEngine:
    """
    Args:
        elevation_provider: Elevation lookup
        geofence_provider: Geofence containment lookup
        provider_timeout: Seconds allowed for each provider call
    """

    def __init__(
        self,
        elevation_provider: ElevationProvider,
        geofence_provider: GeofenceProvider,
        provider_timeout: float = 10.0,
    ):
        self.elevation_provider = elevation_provider
        self.geofence_provider = geofence_provider
        self.provider_timeout = provider_timeout

    async def _bounded(self, call: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(call, timeout=self.provider_timeout)

    async def enrich(
        self,
        report: PositionReport,
        ttl_seconds: int,
        output_fields: Optional[Iterable[str]] = None,
    ) -> EnrichedRecord:
        """
        Enrich one report.

        Args:
            report: Validated position report
            ttl_seconds: Seconds the record stays live after its timestamp
            output_fields: Optional passthrough allow-list

        Raises:
            AppException: ENRICHMENT_FAILED when a provider fails or times out
        """
        fields = {
            "id": report.id,
            "ts": report.timestamp,
            "expiration": report.timestamp + ttl_seconds,
            "passthrough": report.passthrough_fields(output_fields),
        }

        if not report.has_coordinates:
            return EnrichedRecord(**fields)

        longitude, latitude = report.longitude, report.latitude
        results = await asyncio.gather(
            self._bounded(self.elevation_provider.lookup(longitude, latitude)),
            self._bounded(self.geofence_provider.lookup(longitude, latitude)),
            return_exceptions=True,
        )
        elevation, matches = results

        for provider, result in zip(("elevation", "geofence"), results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.warning(
                    f"{provider} lookup failed for record {report.id}",
                    extra={"extra_data": {
                        "record_id": report.id,
                        "provider": provider,
                        "error_type": type(result).__name__,
                        "error": str(result),
                    }}
                )
                raise enrichment_failed(report.id, cause=result) from result

        if matches:
            fields.update(geofenceStatus=INSIDE, geofenceName=matches[0])
        else:
            fields.update(geofenceStatus=OUTSIDE)

        return EnrichedRecord(
            longitude=longitude,
            latitude=latitude,
            elevation=elevation,
            **fields,
        )
