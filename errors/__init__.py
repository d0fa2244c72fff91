"""
Error handling module for the asset tracking service.

Provides:
- ErrorCode enum for the pipeline and API error taxonomy
- AppException class for application-specific exceptions
- Error response models and FastAPI exception handlers
"""

from errors.codes import ErrorCode
from errors.exceptions import AppException
from errors.handlers import (
    ErrorResponse,
    handle_app_exception,
    handle_unexpected_exception,
    register_exception_handlers,
)

__all__ = [
    "ErrorCode",
    "AppException",
    "ErrorResponse",
    "handle_app_exception",
    "handle_unexpected_exception",
    "register_exception_handlers",
]
