"""
Rate limiting for the public query API.

The asset listing endpoint is unauthenticated and scans the whole state
store, so it is rate limited per client IP using slowapi.
"""

import json
import logging

from fastapi import FastAPI, Request, Response
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

DEFAULT_QUERY_RATE_LIMIT = 120


def get_client_ip(request: Request) -> str:
    """
    Extract the client IP address, honouring proxy forwarding headers.

    Args:
        request: The incoming FastAPI request

    Returns:
        The client's IP address as a string
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For can contain multiple IPs, the first is the original client
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    return get_remote_address(request)


limiter = Limiter(key_func=get_client_ip)

_query_rate_limit = DEFAULT_QUERY_RATE_LIMIT


def get_rate_limit_string(requests_per_minute: int) -> str:
    """Rate limit string in slowapi format (e.g. "120/minute")."""
    return f"{requests_per_minute}/minute"


def query_rate_limit() -> str:
    """Current query rate limit; evaluated by slowapi on each request."""
    return get_rate_limit_string(_query_rate_limit)


def setup_rate_limiting(
    app: FastAPI,
    requests_per_minute: int = DEFAULT_QUERY_RATE_LIMIT,
    enabled: bool = True
) -> None:
    """
    Configure rate limiting for the query API.

    Args:
        app: The FastAPI application instance
        requests_per_minute: Maximum query requests per minute per IP
        enabled: Whether rate limiting is enabled
    """
    global _query_rate_limit

    limiter.enabled = enabled
    if not enabled:
        logger.info("Rate limiting is disabled")
        return

    _query_rate_limit = requests_per_minute
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    logger.info(f"Rate limiting configured: query={requests_per_minute}/min")


async def _rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Render a rate limit breach in the application's error format."""
    request_id = getattr(request.state, "request_id", "unknown")
    retry_after = getattr(exc, "retry_after", 60)

    response_body = {
        "error_code": "RATE_LIMITED",
        "message": "Too many requests. Please slow down.",
        "details": {
            "limit": str(exc.detail) if hasattr(exc, "detail") else "Rate limit exceeded",
            "retry_after_seconds": retry_after
        },
        "request_id": request_id
    }

    logger.warning(
        f"Rate limit exceeded for IP {get_client_ip(request)}",
        extra={"extra_data": {
            "request_id": request_id,
            "path": request.url.path,
            "method": request.method
        }}
    )

    return Response(
        content=json.dumps(response_body),
        status_code=429,
        media_type="application/json",
        headers={
            "Retry-After": str(retry_after),
            "X-Request-ID": request_id,
            "Access-Control-Allow-Origin": "*",
        }
    )
