"""
Request context and security headers.
"""

import uuid
from typing import Callable

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """
    Add security headers to every response.

    The API serves JSON only, so nothing may be framed, sniffed or cached.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        response = await call_next(request)

        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Content-Security-Policy"] = "default-src 'none'; frame-ancestors 'none'"
        if "Cache-Control" not in response.headers:
            response.headers["Cache-Control"] = "no-store"

        return response


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Bind a request id to structlog's context for the duration of a request.

    An incoming X-Request-ID is reused so log lines can be joined with the
    caller's; otherwise one is generated. Echoed back on the response.
    """

    header_name = "X-Request-ID"

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(self.header_name) or uuid.uuid4().hex
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id, path=request.url.path)
        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.clear_contextvars()
        response.headers[self.header_name] = request_id
        return response
