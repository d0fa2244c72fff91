"""
Position report and enriched record models.

A position report arrives on the ingestion queue as a JSON object::

    {"id": 1, "coordinates": [-122.4, 37.8], "timestamp": 1700000000, "speed": 12}

``id`` and ``timestamp`` are required integers; ``coordinates`` is an optional
``[longitude, latitude]`` pair (an explicit null counts as absent); every
other key is carried through to the enriched record unchanged.
"""

import json
import logging
from typing import Annotated, Any, Dict, Iterable, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors.exceptions import invalid_record, malformed_message

logger = logging.getLogger(__name__)

# Numbers only: strict mode rejects strings and booleans, and infinities/NaN
# (which json.loads accepts) are refused.
FiniteCoordinate = Annotated[float, Field(strict=True, allow_inf_nan=False)]

GeofenceStatus = Literal["INSIDE", "OUTSIDE"]

# Keys computed by the enrichment engine. Report fields with these names are
# never copied through, so they cannot overwrite computed values.
RESERVED_FIELDS = frozenset({
    "id",
    "ts",
    "timestamp",
    "coordinates",
    "longitude",
    "latitude",
    "elevation",
    "geofenceStatus",
    "geofenceName",
    "expiration",
})


class PositionReport(BaseModel):
    """A single asset position report as delivered by the ingestion queue."""

    model_config = ConfigDict(extra="allow")

    id: Annotated[int, Field(strict=True)]
    timestamp: Annotated[int, Field(strict=True)]
    coordinates: Optional[Tuple[FiniteCoordinate, FiniteCoordinate]] = None

    @property
    def has_coordinates(self) -> bool:
        return self.coordinates is not None

    @property
    def longitude(self) -> Optional[float]:
        return self.coordinates[0] if self.coordinates is not None else None

    @property
    def latitude(self) -> Optional[float]:
        return self.coordinates[1] if self.coordinates is not None else None

    def passthrough_fields(
        self, allowed: Optional[Iterable[str]] = None
    ) -> Dict[str, Any]:
        """
        Extra fields to copy onto the enriched record.

        Args:
            allowed: Optional allow-list of field names; None copies every
                non-reserved field, an empty list copies none.
        """
        extras = self.model_extra or {}
        allow = set(allowed) if allowed is not None else None
        return {
            key: value
            for key, value in extras.items()
            if key not in RESERVED_FIELDS and (allow is None or key in allow)
        }


class EnrichedRecord(BaseModel):
    """
    A position report after enrichment.

    ``elevation`` and ``geofenceStatus`` are set only when the report had
    coordinates; ``geofenceName`` only when the status is INSIDE.
    """

    model_config = ConfigDict(frozen=True)

    id: int
    ts: int
    longitude: Optional[float] = None
    latitude: Optional[float] = None
    elevation: Optional[float] = None
    geofenceStatus: Optional[GeofenceStatus] = None
    geofenceName: Optional[str] = None
    expiration: int
    passthrough: Dict[str, Any] = Field(default_factory=dict)

    def to_item(self) -> Dict[str, Any]:
        """
        Flat row as written to the state store, the archive and live channels.

        Always contains id, ts, longitude, latitude and expiration; the
        enrichment fields only when they hold a value; then passthrough.
        """
        item: Dict[str, Any] = {
            "id": self.id,
            "ts": self.ts,
            "longitude": self.longitude,
            "latitude": self.latitude,
            "expiration": self.expiration,
        }
        if self.elevation is not None:
            item["elevation"] = self.elevation
        if self.geofenceStatus is not None:
            item["geofenceStatus"] = self.geofenceStatus
        if self.geofenceName is not None:
            item["geofenceName"] = self.geofenceName
        for key, value in self.passthrough.items():
            if key not in RESERVED_FIELDS:
                item[key] = value
        return item

    def to_json(self) -> str:
        return json.dumps(self.to_item(), separators=(",", ":"), default=str)


def _only_coordinate_errors(errors: List[Dict[str, Any]]) -> bool:
    return bool(errors) and all(
        err.get("loc") and err["loc"][0] == "coordinates" for err in errors
    )


def parse_report(data: Any, reference: Optional[str] = None) -> PositionReport:
    """
    Validate an already-decoded JSON value as a PositionReport.

    Args:
        data: Decoded JSON value
        reference: Queue message reference, for error details

    Raises:
        AppException: INVALID_RECORD when only the coordinate pair is bad,
            MALFORMED_MESSAGE for anything else
    """
    details: Dict[str, Any] = {}
    if reference is not None:
        details["message_ref"] = reference

    if not isinstance(data, dict):
        raise malformed_message(
            f"Position report must be a JSON object, got {type(data).__name__}",
            details=details or None,
        )

    try:
        return PositionReport.model_validate(data)
    except ValidationError as e:
        errors = e.errors(include_url=False, include_input=False)
        if _only_coordinate_errors(errors):
            raise invalid_record(
                data.get("id"),
                details={**details, "errors": [err["msg"] for err in errors]},
            ) from e
        raise malformed_message(
            "Position report failed validation",
            details={
                **details,
                "errors": [
                    {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in errors
                ],
            },
        ) from e


def decode_message(payload: bytes, reference: Optional[str] = None) -> PositionReport:
    """
    Decode a raw queue payload into a PositionReport.

    Raises:
        AppException: MALFORMED_MESSAGE or INVALID_RECORD (see parse_report)
    """
    try:
        data = json.loads(payload)
    except (UnicodeDecodeError, ValueError, RecursionError) as e:
        # RecursionError: nesting deeper than the decoder can follow
        raise malformed_message(
            "Payload is not valid JSON",
            details={"message_ref": reference, "cause": str(e)},
        ) from e
    return parse_report(data, reference)
