"""Stable error taxonomy for the draft gateway.

Errors are values. Components return a ``GatewayError`` alongside (or instead
of) their normal result and the protocol handlers turn it into a response;
exceptions are reserved for programming errors and infrastructure failures.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

# Codes
VALIDATION_ERROR = "VALIDATION_ERROR"
EXECUTION_DENIED = "EXECUTION_DENIED"
AGENT_NOT_FOUND = "AGENT_NOT_FOUND"
MODULE_DISABLED = "MODULE_DISABLED"
ALREADY_EXECUTED = "ALREADY_EXECUTED"
RATE_LIMITED = "RATE_LIMITED"
EXECUTION_FAILED = "EXECUTION_FAILED"
PENDING_APPROVAL = "PENDING_APPROVAL"
INTERNAL_ERROR = "INTERNAL_ERROR"

REQUEST_REPLAYED = "REQUEST_REPLAYED"

# Suggested remedial actions surfaced to the user
ACTION_LOGIN = "login"
ACTION_REGENERATE = "regenerate proposal"
ACTION_ELEVATE = "request elevated permission"
ACTION_RETRY_LATER = "retry later"
ACTION_WAIT_APPROVAL = "wait for owner approval"
ACTION_NONE = "none"


@dataclass(frozen=True)
class GatewayError:
    """A failed outcome with a stable machine-readable code."""

    code: str
    reason: str
    status: int = 400
    suggested_action: str = ACTION_NONE
    details: dict[str, Any] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "code": self.code,
            "reason": self.reason,
            "suggested_action": self.suggested_action,
        }
        body.update(self.details)
        return body

    def __str__(self) -> str:
        return f"{self.code}: {self.reason}"


def gateway_error(
    code: str,
    reason: str,
    *,
    status: int = 400,
    suggested_action: str = ACTION_NONE,
    **details: Any,
) -> GatewayError:
    return GatewayError(
        code=code,
        reason=reason,
        status=status,
        suggested_action=suggested_action,
        details=details,
    )


def validation_error(reason: str, **details: Any) -> GatewayError:
    return gateway_error(
        VALIDATION_ERROR, reason, status=400, suggested_action=ACTION_REGENERATE, **details
    )


def denied(
    reason: str,
    *,
    status: int = 403,
    suggested_action: str = ACTION_REGENERATE,
    **details: Any,
) -> GatewayError:
    return gateway_error(
        EXECUTION_DENIED, reason, status=status, suggested_action=suggested_action, **details
    )


def internal_error() -> GatewayError:
    return gateway_error(
        INTERNAL_ERROR, "Internal server error", status=500, suggested_action=ACTION_RETRY_LATER
    )
