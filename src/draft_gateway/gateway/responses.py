"""Protocol-level results, independent of the HTTP framework."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from draft_gateway.errors import ACTION_REGENERATE, EXECUTION_FAILED, GatewayError
from draft_gateway.execution.reservations import stored_entities, stored_result
from draft_gateway.storage.models import ReservationRecord


@dataclass
class GatewayResult:
    status: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


def ok(body: dict[str, Any], request_id: str, status: int = 200) -> GatewayResult:
    return GatewayResult(status=status, body={**body, "request_id": request_id})


def fail(
    error: GatewayError,
    request_id: str,
    headers: dict[str, str] | None = None,
) -> GatewayResult:
    return GatewayResult(
        status=error.status,
        body={**error.as_dict(), "request_id": request_id},
        headers=dict(headers or {}),
    )


def replay_reservation(
    record: ReservationRecord,
    request_id: str,
    *,
    include_result: bool = False,
) -> GatewayResult:
    """Rebuild the response for a draft that already reached a terminal state."""
    if record.status == "success":
        body: dict[str, Any] = {
            "success": True,
            "entities": stored_entities(record),
            "audit_log_id": record.audit_log_id,
            "replayed": True,
        }
        if include_result:
            body["result"] = stored_result(record)
        return ok(body, request_id)

    return GatewayResult(
        status=record.http_status or 400,
        body={
            "code": record.error_code or EXECUTION_FAILED,
            "reason": record.error or "Execution failed",
            "suggested_action": ACTION_REGENERATE,
            "replayed": True,
            "request_id": request_id,
        },
    )
