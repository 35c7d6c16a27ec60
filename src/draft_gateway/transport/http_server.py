"""Starlette HTTP server assembly."""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import Any

from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from draft_gateway.app import AppContext, get_app_context
from draft_gateway.auth.identity import AuthFailure, IdentityProvider
from draft_gateway.errors import (
    ACTION_LOGIN,
    ACTION_RETRY_LATER,
    EXECUTION_DENIED,
    INTERNAL_ERROR,
)
from draft_gateway.middleware.audit import AuditMiddleware
from draft_gateway.middleware.security import PreAuthSecurityMiddleware
from draft_gateway.transport import handlers

logger = logging.getLogger(__name__)

MAINTENANCE_PATH = "/v1/maintenance/cleanup"
_AUTH_EXEMPT_PATHS = frozenset({"/health", "/ready", MAINTENANCE_PATH})
_MAX_REQUEST_ID_LENGTH = 128


def _request_id_from_header(request: Request) -> str | None:
    value = request.headers.get("x-request-id", "").strip()
    if not value or len(value) > _MAX_REQUEST_ID_LENGTH:
        return None
    if not all(0x20 < ord(c) < 0x7F for c in value):
        return None
    return value


class BearerAuthMiddleware(BaseHTTPMiddleware):
    """
    Authenticates ``Authorization: Bearer`` tokens through an
    ``IdentityProvider`` and records the caller on ``request.state``.

    Also assigns ``request.state.request_id`` (``x-request-id`` when valid,
    else a fresh uuid4) so every response, including 401s, carries one.
    """

    def __init__(
        self,
        app: Any,
        provider: IdentityProvider,
        exempt_paths: frozenset[str] = _AUTH_EXEMPT_PATHS,
    ) -> None:
        super().__init__(app)
        self.provider = provider
        self.exempt_paths = exempt_paths

    async def dispatch(self, request: Request, call_next: Any) -> Response:
        header_request_id = _request_id_from_header(request)
        request_id = header_request_id or str(uuid.uuid4())
        request.state.request_id = request_id
        request.state.request_id_supplied = header_request_id is not None

        if request.url.path in self.exempt_paths:
            return await call_next(request)

        auth_header = request.headers.get("authorization", "")
        if not auth_header.lower().startswith("bearer ") or not auth_header[7:].strip():
            return self._unauthorized("Authorization header with Bearer token required", request_id)
        token = auth_header[7:].strip()

        try:
            result = await self.provider.authenticate(token)
        except Exception:
            logger.exception("Unexpected error during token validation")
            return JSONResponse(
                status_code=500,
                content={
                    "code": INTERNAL_ERROR,
                    "reason": "Token validation failed",
                    "suggested_action": ACTION_RETRY_LATER,
                    "request_id": request_id,
                },
            )

        if isinstance(result, AuthFailure):
            logger.warning("Token validation failed: %s (%s)", result.message, result.code)
            return self._unauthorized(result.message, request_id)

        request.state.user_id = result.user_id
        return await call_next(request)

    @staticmethod
    def _unauthorized(reason: str, request_id: str) -> JSONResponse:
        return JSONResponse(
            status_code=401,
            content={
                "code": EXECUTION_DENIED,
                "reason": reason,
                "suggested_action": ACTION_LOGIN,
                "request_id": request_id,
            },
            headers={"WWW-Authenticate": 'Bearer realm="draft-gateway"'},
        )


def create_http_app(context: AppContext | None = None) -> Starlette:
    """Create the Starlette app.

    ``context`` defaults to the process-wide ``get_app_context()``; tests pass
    one built from explicit settings.
    """
    ctx = context or get_app_context()
    settings = ctx.settings
    trust_forwarded = settings.server.http_trust_forwarded_headers

    # Order: PreAuthSecurity -> BearerAuth -> Audit
    # Size limits and the timeout apply before any token work; audit lines
    # carry the authenticated user id.
    middleware: list[Middleware] = [
        Middleware(PreAuthSecurityMiddleware, settings=settings.server),
        Middleware(BearerAuthMiddleware, provider=ctx.identity_provider),
        Middleware(
            AuditMiddleware,
            enabled=settings.server.audit_enabled,
            trust_forwarded_headers=trust_forwarded,
        ),
    ]

    # CORS must be outermost so preflight requests are answered before auth.
    if settings.server.http_enable_cors and settings.server.http_allowed_origins:
        from starlette.middleware.cors import CORSMiddleware

        middleware.insert(
            0,
            Middleware(
                CORSMiddleware,
                allow_origins=list(settings.server.http_allowed_origins),
                allow_methods=["POST", "GET", "OPTIONS"],
                allow_headers=["Authorization", "Content-Type", "Accept", "X-Request-Id"],
            ),
        )

    routes = [
        Route("/v1/execute-action", endpoint=handlers.execute_action, methods=["POST"]),
        Route(MAINTENANCE_PATH, endpoint=handlers.maintenance_cleanup, methods=["GET", "POST"]),
        Route("/health", endpoint=handlers.health, methods=["GET"]),
        Route("/ready", endpoint=handlers.ready, methods=["GET"]),
    ]

    @asynccontextmanager
    async def lifespan(app: Starlette):
        logger.info("Starting draft gateway HTTP server (env=%s)", settings.server.app_env)
        try:
            yield
        finally:
            logger.info("Stopping draft gateway HTTP server...")
            ctx.store.close()

    app = Starlette(routes=routes, middleware=middleware, lifespan=lifespan)
    app.state.context = ctx
    return app
