"""
Rate limiting for public registration and gate-scanner endpoints.
Uses slowapi; all limits are per client IP address.
"""
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.status import HTTP_429_TOO_MANY_REQUESTS

from config import APP_ENV

limiter = Limiter(key_func=get_remote_address, enabled=APP_ENV != "test")

# Public form submissions
REGISTER_POST_LIMIT = "10 per minute"
# Scanners at the gate submit in bursts
SCAN_LIMIT = "120 per minute"
UPGRADE_LIMIT = "10 per minute"
ADMIN_LIMIT = "60 per minute"


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded):
    """JSON 429 in the same `{success, error}` shape as every other API error."""
    response = JSONResponse(
        status_code=HTTP_429_TOO_MANY_REQUESTS,
        content={
            "success": False,
            "error": "Rate limit exceeded",
            "detail": f"Too many requests. Limit: {exc.detail}",
        },
    )
    view_rate_limit = getattr(request.state, "view_rate_limit", None)
    if view_rate_limit is not None and hasattr(request.app.state, "limiter"):
        response = request.app.state.limiter._inject_headers(response, view_rate_limit)
    return response
