from __future__ import annotations

import asyncio
import logging
from contextlib import closing

import pytest
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from draft_gateway.config import ServerSettings
from draft_gateway.middleware.audit import (
    AuditMiddleware,
    mask_exception_message,
    sanitize_log_value,
)
from draft_gateway.middleware.security import PreAuthSecurityMiddleware, get_client_ip


def _request(headers: dict[str, str], client: tuple[str, int] | None = ("10.1.1.1", 5000)):
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [(k.lower().encode(), v.encode()) for k, v in headers.items()],
        "client": client,
    }
    return Request(scope)


class TestClientIp:
    def test_direct_peer(self) -> None:
        request = _request({"x-forwarded-for": "1.2.3.4"})
        assert get_client_ip(request) == "10.1.1.1"

    def test_forwarded_for_first_hop(self) -> None:
        request = _request({"x-forwarded-for": "1.2.3.4, 10.0.0.1"})
        assert get_client_ip(request, trust_forwarded_headers=True) == "1.2.3.4"

    def test_real_ip(self) -> None:
        request = _request({"x-real-ip": "5.6.7.8"})
        assert get_client_ip(request, trust_forwarded_headers=True) == "5.6.7.8"

    def test_forwarded_value_is_sanitized(self) -> None:
        request = _request({"x-real-ip": "5.6.7.8\tevil"})
        assert get_client_ip(request, trust_forwarded_headers=True) == "5.6.7.8evil"

    def test_no_client(self) -> None:
        assert get_client_ip(_request({}, client=None)) == "unknown"


def test_sanitize_log_value() -> None:
    assert sanitize_log_value("line1\nline2\rx") == "line1_line2_x"
    assert sanitize_log_value("tab\tkept") == "tab\tkept"


@pytest.mark.parametrize(
    "message",
    [
        "failed with access_token=abc123 for user",
        'payload {"confirmation_hash": "deadbeef"}',
        "Authorization: Bearer-xyz",
        "rejected x-maintenance-key: k123",
    ],
)
def test_mask_exception_message(message: str) -> None:
    masked = mask_exception_message(message)
    assert "***MASKED***" in masked
    for secret in ("abc123", "deadbeef", "Bearer-xyz", "k123"):
        assert secret not in masked


async def _echo(request: Request) -> JSONResponse:
    body = await request.body()
    return JSONResponse({"size": len(body)})


def _security_app(**overrides) -> TestClient:
    settings = ServerSettings(**overrides)
    app = Starlette(
        routes=[
            Route("/echo", endpoint=_echo, methods=["POST"]),
            Route("/health", endpoint=_echo, methods=["POST"]),
        ],
        middleware=[Middleware(PreAuthSecurityMiddleware, settings=settings)],
    )
    return TestClient(app)


class TestPreAuthSecurity:
    def test_small_body_passes_through(self) -> None:
        response = _security_app(max_body_size_kb=1).post("/echo", content=b"x" * 100)
        assert response.status_code == 200
        assert response.json() == {"size": 100}

    def test_large_body_rejected(self) -> None:
        response = _security_app(max_body_size_kb=1).post("/echo", content=b"x" * 2048)
        assert response.status_code == 413
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_chunked_body_measured_while_streaming(self) -> None:
        def chunks():
            for _ in range(4):
                yield b"x" * 512

        response = _security_app(max_body_size_kb=1).post("/echo", content=chunks())
        assert response.status_code == 413

    def test_large_headers_rejected(self) -> None:
        client = _security_app(max_header_size_kb=1)
        response = client.post("/echo", content=b"{}", headers={"x-padding": "y" * 2048})
        assert response.status_code == 431

    def test_timeout(self) -> None:
        async def app(scope, receive, send):
            await asyncio.sleep(0.5)
            await JSONResponse({"status": "late"})(scope, receive, send)

        middleware = PreAuthSecurityMiddleware(app, ServerSettings(request_timeout_seconds=0.1))
        with closing(TestClient(middleware)) as client:
            response = client.get("/slow")
        assert response.status_code == 504
        assert response.json()["suggested_action"] == "retry later"

    def test_exempt_paths_skip_limits(self) -> None:
        response = _security_app(max_body_size_kb=1).post("/health", content=b"x" * 2048)
        assert response.status_code == 200


def test_audit_middleware_logs_request_lines(caplog) -> None:
    async def _whoami(request: Request) -> JSONResponse:
        request.state.user_id = "user-9"
        return JSONResponse({})

    app = Starlette(
        routes=[Route("/v1/execute-action", endpoint=_whoami, methods=["POST"])],
        middleware=[Middleware(AuditMiddleware)],
    )
    with caplog.at_level(logging.INFO, logger="draft_gateway.middleware.audit"):
        TestClient(app).post("/v1/execute-action")

    messages = [record.getMessage() for record in caplog.records]
    assert any(m.startswith("REQUEST_START") for m in messages)
    end = next(m for m in messages if m.startswith("REQUEST_END"))
    assert "status=200" in end
    assert "user_id=user-9" in end
