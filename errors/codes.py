"""
Error code catalog for the asset tracking service.

Codes fall in three groups:
- Per-record errors raised while consuming the ingestion queue. Some are
  recovered locally (the record is skipped), the others abort the batch so
  the queue redelivers it.
- Dependency errors surfaced by the query API.
- Request and internal errors.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """
    Enumeration of all error codes used in the application.
    """

    # Per-record pipeline errors
    MALFORMED_MESSAGE = "MALFORMED_MESSAGE"
    """Payload is not valid JSON or lacks id/timestamp; record is skipped"""

    INVALID_RECORD = "INVALID_RECORD"
    """Coordinates present but not a pair of finite numbers; record is skipped"""

    ENRICHMENT_FAILED = "ENRICHMENT_FAILED"
    """Elevation or geofence provider failed; batch is aborted"""

    STORE_WRITE_FAILED = "STORE_WRITE_FAILED"
    """State store or archive write failed; batch is aborted"""

    PUBLISH_FAILED = "PUBLISH_FAILED"
    """Live publish failed; logged only"""

    # Request errors (4xx)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Request payload validation failed (HTTP 400)"""

    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    """Requested resource does not exist (HTTP 404)"""

    RATE_LIMITED = "RATE_LIMITED"
    """Too many requests (HTTP 429)"""

    # Dependency errors (5xx)
    STATE_STORE_UNAVAILABLE = "STATE_STORE_UNAVAILABLE"
    """State store scan or connection failed (HTTP 503)"""

    QUEUE_UNAVAILABLE = "QUEUE_UNAVAILABLE"
    """Ingestion queue publish failed (HTTP 503)"""

    CIRCUIT_OPEN = "CIRCUIT_OPEN"
    """Circuit breaker is open (HTTP 503)"""

    # Internal errors (5xx)
    INTERNAL_ERROR = "INTERNAL_ERROR"
    """Unexpected server error (HTTP 500)"""


ERROR_CODE_STATUS_MAP: dict[ErrorCode, int] = {
    ErrorCode.MALFORMED_MESSAGE: 400,
    ErrorCode.INVALID_RECORD: 400,
    ErrorCode.ENRICHMENT_FAILED: 502,
    ErrorCode.STORE_WRITE_FAILED: 503,
    ErrorCode.PUBLISH_FAILED: 502,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.RESOURCE_NOT_FOUND: 404,
    ErrorCode.RATE_LIMITED: 429,
    ErrorCode.STATE_STORE_UNAVAILABLE: 503,
    ErrorCode.QUEUE_UNAVAILABLE: 503,
    ErrorCode.CIRCUIT_OPEN: 503,
    ErrorCode.INTERNAL_ERROR: 500,
}

# Per-record errors the pipeline recovers from by skipping the record
SKIPPABLE_RECORD_ERRORS = frozenset({
    ErrorCode.MALFORMED_MESSAGE,
    ErrorCode.INVALID_RECORD,
})


def get_default_status_code(error_code: ErrorCode) -> int:
    """
    Get the default HTTP status code for an error code.

    Args:
        error_code: The error code to look up

    Returns:
        The default HTTP status code for the error code
    """
    return ERROR_CODE_STATUS_MAP.get(error_code, 500)
