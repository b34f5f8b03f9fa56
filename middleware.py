"""
Request ID middleware for tracing and debugging.

Every request gets a short id. It is exposed to log records through a
contextvar and echoed back in the `X-Request-ID` header, so a gate operator
can quote it when a scan fails.
"""
import time
import uuid
import logging
import contextvars
from typing import Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"
MAX_REQUEST_ID_LENGTH = 64

_current_request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Return the request ID bound to the current context, if any."""
    return _current_request_id.get()


def _request_id_for(request: Request) -> str:
    incoming = (request.headers.get(REQUEST_ID_HEADER) or "").strip()
    return incoming[:MAX_REQUEST_ID_LENGTH] or uuid.uuid4().hex[:8]


class RequestIDMiddleware(BaseHTTPMiddleware):
    """Binds an id to the request (honoring a client-supplied one) and logs its duration."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = _request_id_for(request)
        request.state.request_id = request_id
        token = _current_request_id.set(request_id)
        started = time.perf_counter()
        try:
            response = await call_next(request)
        finally:
            _current_request_id.reset(token)
        response.headers[REQUEST_ID_HEADER] = request_id
        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.debug(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.1f} ms) [{request_id}]")
        return response
