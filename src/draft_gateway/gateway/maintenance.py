"""Retention cleanup for operational tables."""

from __future__ import annotations

import logging
import sqlite3
import time
from typing import Callable

from draft_gateway.config import ExecutionSettings, MaintenanceSettings, ServerSettings
from draft_gateway.errors import ACTION_NONE, GatewayError, gateway_error
from draft_gateway.gateway.responses import GatewayResult, ok
from draft_gateway.signing import constant_time_equals
from draft_gateway.storage.db import SqliteStore
from draft_gateway.utils.time import now_ms

logger = logging.getLogger(__name__)

_MINUTE_MS = 60 * 1000
_HOUR_MS = 60 * _MINUTE_MS
_DAY_MS = 24 * _HOUR_MS


def _rejected(code: str, reason: str, status: int) -> GatewayError:
    return gateway_error(code, reason, status=status, suggested_action=ACTION_NONE, ok=False)


class MaintenanceRunner:
    """
    Deletes expired confirmations, stale reservations and aged-out
    operational rows.

    Each step runs independently: a failing step is logged and reported as
    zero rows so the remaining steps still run.
    """

    def __init__(
        self,
        store: SqliteStore,
        settings: MaintenanceSettings,
        execution: ExecutionSettings,
        server: ServerSettings,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._settings = settings
        self._execution = execution
        self._server = server
        self._clock = clock

    def authorize(
        self,
        *,
        provided_key: str | None,
        client_ip: str | None,
        method: str,
        query_string: str,
    ) -> GatewayError | None:
        """Return an error when the caller may not run cleanup."""
        if self._server.app_env == "prod":
            if method.upper() != "POST":
                return _rejected("METHOD_NOT_ALLOWED", "Use POST", 405)
            if query_string:
                return _rejected("BAD_REQUEST", "Query parameters are not accepted", 400)

        allowed = self._settings.allowed_ips
        if allowed and client_ip not in allowed:
            logger.warning("Maintenance request rejected from %s", client_ip)
            return _rejected("FORBIDDEN", "Client address not allowed", 403)

        expected = self._settings.key
        if not expected or not provided_key or not constant_time_equals(expected, provided_key):
            logger.warning("Maintenance request rejected: bad or missing key")
            return _rejected("UNAUTHORIZED", "Invalid maintenance key", 401)
        return None

    def run(self, request_id: str) -> GatewayResult:
        started = time.monotonic()
        now = self._clock()
        steps: list[tuple[str, Callable[[int], int], int]] = [
            ("confirmations_deleted", self._store.delete_expired_confirmations, now),
            (
                "stale_reservations_deleted",
                self._store.delete_stale_reservations,
                now - self._execution.reservation_stale_seconds * 1000,
            ),
            (
                "dedupes_deleted",
                self._store.delete_request_dedupes,
                now - self._settings.dedupe_retention_minutes * _MINUTE_MS,
            ),
            (
                "rate_limits_deleted",
                self._store.delete_rate_limit_hits,
                now - self._settings.rate_limit_retention_hours * _HOUR_MS,
            ),
            (
                "pending_approvals_deleted",
                self._store.delete_pending_approvals,
                now - self._settings.pending_approval_retention_days * _DAY_MS,
            ),
        ]

        body: dict[str, object] = {"ok": True}
        for name, step, cutoff in steps:
            try:
                body[name] = step(cutoff)
            except sqlite3.Error:
                logger.exception("Maintenance step %s failed", name)
                body[name] = 0

        body["runtime_ms"] = int((time.monotonic() - started) * 1000)
        logger.info("Maintenance cleanup finished: %s", body)
        return ok(body, request_id)
