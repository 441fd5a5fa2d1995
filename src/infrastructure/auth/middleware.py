"""
Starlette middleware mounted on the storefront auth API.
"""

import logging
import secrets
import time
from collections.abc import Callable
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from src.infrastructure.monitoring.logging import correlation_context

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"

DEFAULT_SECURITY_HEADERS: dict[str, str] = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Strict-Transport-Security": "max-age=31536000; includeSubDomains",
    # Auth responses carry session cookies and one-time links
    "Cache-Control": "no-store",
}


class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    """Stamps hardening headers onto every auth response."""

    def __init__(self, app: ASGIApp, headers: dict[str, str] | None = None) -> None:
        super().__init__(app)
        self.headers = dict(DEFAULT_SECURITY_HEADERS if headers is None else headers)

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        response: Response = await call_next(request)
        for name, value in self.headers.items():
            response.headers.setdefault(name, value)
        return response


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Tags each request with an id.

    The caller's ``X-Request-ID`` is reused when present. The id is exposed on
    ``request.state``, echoed in the response and used as the logging
    correlation id while the request is handled.
    """

    async def dispatch(self, request: Request, call_next: Callable[[Request], Any]) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or f"req_{secrets.token_urlsafe(16)}"
        request.state.request_id = request_id

        started = time.perf_counter()
        with correlation_context(request_id):
            response: Response = await call_next(request)
            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.debug(
                f"{request.method} {request.url.path} -> {response.status_code} "
                f"in {elapsed_ms:.1f}ms"
            )

        response.headers[REQUEST_ID_HEADER] = request_id
        return response
