"""Request audit logging with sensitive value masking."""

from __future__ import annotations

import logging
import re
import time
from functools import lru_cache
from typing import Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from draft_gateway.middleware.security import get_client_ip

logger = logging.getLogger(__name__)

# Fields that must never appear in logs
SENSITIVE_FIELDS = frozenset(
    {
        "access_token",
        "refresh_token",
        "id_token",
        "secret",
        "password",
        "credential",
        "authorization",
        "confirmation_hash",
        "x-maintenance-key",
    }
)

# Control character pattern for log injection prevention.
_CONTROL_CHAR_RE = re.compile(r"[\x00-\x08\x0a-\x1f\x7f]")


def sanitize_log_value(value: str) -> str:
    """Replace control characters (newlines, tabs, etc.) to prevent log injection."""
    return _CONTROL_CHAR_RE.sub("_", value)


@lru_cache(maxsize=128)
def _get_mask_pattern(field: str) -> re.Pattern:
    return re.compile(
        rf'(["\']?{re.escape(field)}["\']?\s*[:=]\s*)["\']?[^"\'\s,}}]*["\']?',
        re.IGNORECASE,
    )


def mask_exception_message(message: str, mask_fields: frozenset[str] = SENSITIVE_FIELDS) -> str:
    """Mask ``field=value`` and ``"field": "value"`` pairs in free text."""
    masked = message
    for field in mask_fields:
        masked = _get_mask_pattern(field).sub(r"\1***MASKED***", masked)
    return masked


class AuditMiddleware(BaseHTTPMiddleware):
    """
    Logs one ``REQUEST_START`` and one ``REQUEST_END`` line per request.

    The authenticated user id is read from ``request.state`` (set by the
    bearer auth middleware); exception text is masked before logging.
    """

    EXEMPT_PATHS = frozenset({"/health", "/ready"})

    def __init__(
        self,
        app: Callable,
        enabled: bool = True,
        trust_forwarded_headers: bool = False,
    ) -> None:
        super().__init__(app)
        self.enabled = enabled
        self._trust_forwarded_headers = trust_forwarded_headers

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not self.enabled or request.url.path in self.EXEMPT_PATHS:
            return await call_next(request)

        request_id = sanitize_log_value(getattr(request.state, "request_id", "-"))
        safe_path = sanitize_log_value(request.url.path)
        safe_ip = sanitize_log_value(
            get_client_ip(request, trust_forwarded_headers=self._trust_forwarded_headers)
        )
        start_time = time.time()
        logger.info(
            "REQUEST_START request_id=%s method=%s path=%s client_ip=%s",
            request_id,
            request.method,
            safe_path,
            safe_ip,
        )

        error_message: str | None = None
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        except Exception as e:
            error_message = mask_exception_message(str(e))
            raise
        finally:
            duration_ms = int((time.time() - start_time) * 1000)
            user_id = sanitize_log_value(getattr(request.state, "user_id", None) or "anonymous")
            if error_message:
                logger.error(
                    "REQUEST_END request_id=%s user_id=%s method=%s path=%s "
                    "status=%s duration_ms=%d error=%s",
                    request_id,
                    user_id,
                    request.method,
                    safe_path,
                    status_code,
                    duration_ms,
                    error_message,
                )
            else:
                logger.info(
                    "REQUEST_END request_id=%s user_id=%s method=%s path=%s "
                    "status=%s duration_ms=%d",
                    request_id,
                    user_id,
                    request.method,
                    safe_path,
                    status_code,
                    duration_ms,
                )
