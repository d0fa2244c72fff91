"""
Exception classes for the asset tracking service.

This module provides the AppException class and factory functions for the
error taxonomy of the ingestion pipeline and the query API.
"""

from typing import Any, Optional

from errors.codes import SKIPPABLE_RECORD_ERRORS, ErrorCode, get_default_status_code


class AppException(Exception):
    """
    Base exception class for all application-specific errors.

    Carries:
    - error_code: A standardized error code from the ErrorCode enum
    - message: A human-readable error message
    - status_code: The HTTP status code to return when surfaced over HTTP
    - details: Optional additional context (record id, cause, field errors)

    Example:
        raise AppException(
            error_code=ErrorCode.INVALID_RECORD,
            message="Record 7 has a malformed coordinate pair",
            details={"record_id": 7}
        )
    """

    def __init__(
        self,
        error_code: ErrorCode,
        message: str,
        status_code: Optional[int] = None,
        details: Optional[dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.status_code = status_code or get_default_status_code(error_code)
        self.details = details
        super().__init__(message)

    @property
    def record_id(self) -> Optional[Any]:
        """Id of the record the error is attributed to, if any."""
        if self.details:
            return self.details.get("record_id")
        return None

    @property
    def is_skippable(self) -> bool:
        """Whether the pipeline recovers from this error by skipping the record."""
        return self.error_code in SKIPPABLE_RECORD_ERRORS

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the exception to a dictionary for JSON serialization.

        Returns:
            Dictionary containing error_code, message, and details
        """
        result = {
            "error_code": self.error_code.value,
            "message": self.message,
        }
        if self.details is not None:
            result["details"] = self.details
        return result

    def __repr__(self) -> str:
        return (
            f"AppException(error_code={self.error_code.value!r}, "
            f"message={self.message!r}, status_code={self.status_code}, "
            f"details={self.details!r})"
        )


def _cause_details(record_id: Any, cause: Optional[BaseException]) -> dict[str, Any]:
    details: dict[str, Any] = {"record_id": record_id}
    if cause is not None:
        details["cause"] = f"{type(cause).__name__}: {cause}"
    return details


def malformed_message(
    message: str,
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a malformed message exception (payload not decodable)."""
    return AppException(
        error_code=ErrorCode.MALFORMED_MESSAGE,
        message=message,
        details=details
    )


def invalid_record(
    record_id: Any,
    message: Optional[str] = None,
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an invalid record exception for a malformed coordinate pair."""
    return AppException(
        error_code=ErrorCode.INVALID_RECORD,
        message=message or f"Record {record_id} has a malformed coordinate pair",
        details={"record_id": record_id, **(details or {})}
    )


def enrichment_failed(
    record_id: Any,
    cause: Optional[BaseException] = None,
    message: Optional[str] = None
) -> AppException:
    """Create an enrichment failure for an elevation or geofence provider error."""
    return AppException(
        error_code=ErrorCode.ENRICHMENT_FAILED,
        message=message or f"Enrichment failed for record {record_id}",
        details=_cause_details(record_id, cause)
    )


def store_write_failed(
    record_id: Any,
    target: str,
    cause: Optional[BaseException] = None
) -> AppException:
    """Create a write failure for the state store or the archive sink."""
    details = _cause_details(record_id, cause)
    details["target"] = target
    return AppException(
        error_code=ErrorCode.STORE_WRITE_FAILED,
        message=f"Write to {target} failed for record {record_id}",
        details=details
    )


def publish_failed(
    record_id: Any,
    channel: str,
    cause: Optional[BaseException] = None
) -> AppException:
    """Create a live publish failure."""
    details = _cause_details(record_id, cause)
    details["channel"] = channel
    return AppException(
        error_code=ErrorCode.PUBLISH_FAILED,
        message=f"Publish to channel '{channel}' failed for record {record_id}",
        details=details
    )


def validation_error(
    message: str,
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a validation error exception."""
    return AppException(
        error_code=ErrorCode.VALIDATION_ERROR,
        message=message,
        details=details
    )


def resource_not_found(
    message: str,
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a resource not found exception."""
    return AppException(
        error_code=ErrorCode.RESOURCE_NOT_FOUND,
        message=message,
        details=details
    )


def state_store_unavailable(
    message: str = "State store unavailable",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create a state store unavailable exception."""
    return AppException(
        error_code=ErrorCode.STATE_STORE_UNAVAILABLE,
        message=message,
        details=details
    )


def queue_unavailable(
    message: str = "Ingestion queue unavailable",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an ingestion queue unavailable exception."""
    return AppException(
        error_code=ErrorCode.QUEUE_UNAVAILABLE,
        message=message,
        details=details
    )


def internal_error(
    message: str = "An unexpected error occurred",
    details: Optional[dict[str, Any]] = None
) -> AppException:
    """Create an internal error exception."""
    return AppException(
        error_code=ErrorCode.INTERNAL_ERROR,
        message=message,
        details=details
    )
