"""Route handlers for the gateway endpoints."""

from __future__ import annotations

import asyncio
import json
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from draft_gateway.app import AppContext
from draft_gateway.errors import internal_error, validation_error
from draft_gateway.middleware.security import get_client_ip

logger = logging.getLogger(__name__)

_MAX_REQUEST_ID_LENGTH = 128


def _context(request: Request) -> AppContext:
    return request.app.state.context


def _client_ip(request: Request) -> str:
    settings = _context(request).settings
    return get_client_ip(
        request, trust_forwarded_headers=settings.server.http_trust_forwarded_headers
    )


def _error_response(status: int, body: dict[str, object]) -> JSONResponse:
    return JSONResponse(body, status_code=status)


async def execute_action(request: Request) -> Response:
    """``POST /v1/execute-action`` for both protocol generations."""
    ctx = _context(request)
    request_id: str = request.state.request_id
    replayable = bool(getattr(request.state, "request_id_supplied", False))

    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        error = validation_error("Request body must be valid JSON")
        return _error_response(error.status, {**error.as_dict(), "request_id": request_id})

    if isinstance(body, dict):
        body_request_id = body.get("request_id")
        if isinstance(body_request_id, str) and 0 < len(body_request_id) <= _MAX_REQUEST_ID_LENGTH:
            request_id = body_request_id
            replayable = True

    try:
        result = await asyncio.to_thread(
            ctx.gateway.handle,
            body,
            request.state.user_id,
            request_id,
            replayable=replayable,
            client_ip=_client_ip(request),
        )
    except Exception:
        logger.exception("Unhandled gateway error for request %s", request_id)
        error = internal_error()
        return _error_response(error.status, {**error.as_dict(), "request_id": request_id})

    return JSONResponse(result.body, status_code=result.status, headers=result.headers)


async def maintenance_cleanup(request: Request) -> Response:
    """``POST /v1/maintenance/cleanup``, authorised by ``x-maintenance-key``."""
    ctx = _context(request)
    request_id: str = request.state.request_id
    runner = ctx.gateway.maintenance

    rejected = runner.authorize(
        provided_key=request.headers.get("x-maintenance-key"),
        client_ip=_client_ip(request),
        method=request.method,
        query_string=request.url.query,
    )
    if rejected is not None:
        return _error_response(rejected.status, {**rejected.as_dict(), "request_id": request_id})

    try:
        result = await asyncio.to_thread(runner.run, request_id)
    except Exception:
        logger.exception("Maintenance cleanup failed for request %s", request_id)
        error = internal_error()
        return _error_response(
            error.status, {"ok": False, **error.as_dict(), "request_id": request_id}
        )
    return JSONResponse(result.body, status_code=result.status)


async def health(request: Request) -> Response:
    return JSONResponse({"status": "healthy"})


async def ready(request: Request) -> Response:
    ctx = _context(request)
    try:
        await asyncio.to_thread(ctx.store.fetch_one, "SELECT 1")
    except Exception as exc:
        logger.warning("Readiness check failed: %s", exc)
        return JSONResponse({"status": "unavailable"}, status_code=503)
    return JSONResponse({"status": "ready"})
