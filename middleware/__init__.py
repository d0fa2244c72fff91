"""
Middleware components for the query API.

Request correlation and per-IP rate limiting.
"""

from middleware.request_id import (
    REQUEST_ID_HEADER,
    RequestIDMiddleware,
    correlation_scope,
    new_correlation_id,
    request_id_var,
)
from middleware.rate_limiter import (
    limiter,
    setup_rate_limiting,
    query_rate_limit,
    get_client_ip,
)

__all__ = [
    "REQUEST_ID_HEADER",
    "RequestIDMiddleware",
    "correlation_scope",
    "new_correlation_id",
    "request_id_var",
    "limiter",
    "setup_rate_limiting",
    "query_rate_limit",
    "get_client_ip",
]
