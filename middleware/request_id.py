"""
Correlation IDs for HTTP requests and queue batch invocations.

Every log line carries a correlation id taken from a context variable. The
HTTP middleware binds it per request (honouring an incoming X-Request-ID);
the queue consumer binds one per batch invocation via correlation_scope().
"""

import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Callable, Iterator, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

request_id_var: ContextVar[str] = ContextVar("request_id", default="")

REQUEST_ID_HEADER = "X-Request-ID"


def new_correlation_id(prefix: str = "") -> str:
    """Generate a new correlation id, optionally prefixed (e.g. 'batch-')."""
    return f"{prefix}{uuid.uuid4()}"


@contextmanager
def correlation_scope(correlation_id: Optional[str] = None) -> Iterator[str]:
    """
    Bind a correlation id for the duration of a block.

    Used outside of HTTP requests, e.g. around one batch invocation, so that
    every log entry for the batch can be correlated.

    Yields:
        The bound correlation id
    """
    correlation_id = correlation_id or new_correlation_id()
    token = request_id_var.set(correlation_id)
    try:
        yield correlation_id
    finally:
        request_id_var.reset(token)


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Middleware that binds a request ID to each HTTP request.

    The id is taken from the X-Request-ID header or generated, stored in
    request.state for the error handlers, bound to the logging context
    variable, and echoed in the response headers.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Response]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or new_correlation_id()
        request.state.request_id = request_id

        with correlation_scope(request_id):
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            return response


def get_request_id() -> str:
    """
    Get the current correlation id.

    Returns:
        The bound id, or empty string outside a request or batch
    """
    return request_id_var.get()
