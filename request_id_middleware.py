"""FastAPI middleware to attach an X-Request-ID header to every request
and bind it into structlog contextvars so that all log lines (and audit
entries) written while handling the request carry the same request_id.
"""
from __future__ import annotations

import re
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from structlog.contextvars import bind_contextvars, clear_contextvars

# Accept upstream ids that are safe to echo back and to log
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,128}$")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Reuse the caller's X-Request-ID or mint a UUID4 hex one.

    The ID is returned in the response header and bound into structlog
    contextvars for the duration of the request.
    """

    def __init__(self, app, header_name: str = "X-Request-ID") -> None:  # type: ignore[override]
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:  # type: ignore[override]
        incoming = request.headers.get(self.header_name)
        if incoming and _VALID_REQUEST_ID.match(incoming):
            request_id = incoming
        else:
            request_id = uuid.uuid4().hex
        bind_contextvars(request_id=request_id)
        request.state.request_id = request_id

        try:
            response: Response = await call_next(request)
        finally:
            # Always clear contextvars to avoid leaking to other requests
            clear_contextvars()

        response.headers[self.header_name] = request_id
        return response
