"""Pre-authentication limits: body size, header size and request timeout."""

from __future__ import annotations

import asyncio
import logging
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from draft_gateway.config import ServerSettings
from draft_gateway.errors import ACTION_NONE, ACTION_RETRY_LATER, VALIDATION_ERROR

logger = logging.getLogger(__name__)

SECURITY_EXEMPT_PATHS = frozenset({"/health", "/ready"})


class BodySizeLimitExceeded(Exception):
    """Raised when request body exceeds size limit."""


def _sanitize_ip(value: str) -> str:
    """Strip control characters from an IP string to prevent log injection."""
    return "".join(c for c in value if 0x20 <= ord(c) < 0x7F)


def get_client_ip(request: Request, trust_forwarded_headers: bool = False) -> str:
    """Get client IP with optional trusted proxy header support."""
    if trust_forwarded_headers:
        forwarded_for = request.headers.get("x-forwarded-for")
        if forwarded_for:
            # First hop is the original client.
            return _sanitize_ip(forwarded_for.split(",")[0].strip())
        real_ip = request.headers.get("x-real-ip")
        if real_ip:
            return _sanitize_ip(real_ip.strip())

    if request.client:
        return request.client.host
    return "unknown"


def _error(status: int, code: str, reason: str, action: str = ACTION_NONE) -> JSONResponse:
    return JSONResponse(
        status_code=status,
        content={"code": code, "reason": reason, "suggested_action": action},
    )


class PreAuthSecurityMiddleware(BaseHTTPMiddleware):
    """
    Pre-authentication security middleware.

    Runs BEFORE authentication so oversized or slow requests are rejected
    without touching the identity provider or the store:

    - Request body size limit (413)
    - Header size limit (431)
    - Request timeout (504)

    Request rate limits are enforced per actor by the gateway itself.
    """

    EXEMPT_PATHS = SECURITY_EXEMPT_PATHS

    def __init__(self, app: Callable, settings: ServerSettings) -> None:
        super().__init__(app)
        self.max_body_size_bytes = settings.max_body_size_kb * 1024
        self.max_header_size_bytes = settings.max_header_size_kb * 1024
        self.request_timeout_seconds = settings.request_timeout_seconds

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        # Content-Length is only a fast path; bodies are also measured while
        # streaming so a forged header cannot bypass the limit.
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                size = int(content_length)
                if size < 0:
                    raise ValueError("negative content-length")
                if size > self.max_body_size_bytes:
                    logger.warning(
                        "Request body too large: %d > %d", size, self.max_body_size_bytes
                    )
                    return self._too_large()
            except ValueError:
                logger.warning("Invalid Content-Length header: %r", content_length)

        if request.method in ("POST", "PUT", "PATCH"):
            try:
                await self._read_body_limited(request)
            except BodySizeLimitExceeded:
                logger.warning("Request body exceeded limit during streaming")
                return self._too_large()

        total_header_size = sum(len(k) + len(v) for k, v in request.headers.items())
        if total_header_size > self.max_header_size_bytes:
            logger.warning(
                "Headers too large: %d > %d", total_header_size, self.max_header_size_bytes
            )
            return _error(
                431,
                VALIDATION_ERROR,
                f"Headers exceed {self.max_header_size_bytes} bytes",
            )

        try:
            return await asyncio.wait_for(call_next(request), timeout=self.request_timeout_seconds)
        except asyncio.TimeoutError:
            logger.error("Request timeout after %s seconds", self.request_timeout_seconds)
            return _error(
                504,
                "REQUEST_TIMEOUT",
                f"Request timed out after {self.request_timeout_seconds} seconds",
                ACTION_RETRY_LATER,
            )

    def _too_large(self) -> JSONResponse:
        return _error(
            413,
            VALIDATION_ERROR,
            f"Request body exceeds {self.max_body_size_bytes} bytes",
        )

    async def _read_body_limited(self, request: Request) -> int:
        buf = bytearray()
        async for chunk in request.stream():
            buf.extend(chunk)
            if len(buf) > self.max_body_size_bytes:
                raise BodySizeLimitExceeded(f"Body exceeded {self.max_body_size_bytes} bytes")
        # Cache the body so downstream handlers can read it
        request._body = bytes(buf)
        return len(buf)
