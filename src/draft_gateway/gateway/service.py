"""Entry point that routes an authenticated request body to a protocol."""

from __future__ import annotations

import logging
from typing import Any, Callable

from pydantic import ValidationError

from draft_gateway.adapters import AdapterRegistry, build_default_registry
from draft_gateway.audit.events import EventEmitter
from draft_gateway.auth.roles import RoleResolver
from draft_gateway.config import Settings
from draft_gateway.domain.drafts import (
    DraftRequest,
    LegacyExecuteRequest,
    LegacySignRequest,
    describe_validation_error,
)
from draft_gateway.errors import (
    ACTION_RETRY_LATER,
    RATE_LIMITED,
    REQUEST_REPLAYED,
    gateway_error,
    internal_error,
    validation_error,
)
from draft_gateway.execution.confirmations import ConfirmationStore
from draft_gateway.execution.meaning import MeaningBinder
from draft_gateway.execution.reservations import ReservationStore
from draft_gateway.execution.throttle import RateLimiter, RequestDedupe
from draft_gateway.gateway.drafts import DraftProtocol
from draft_gateway.gateway.legacy import LegacyProtocol
from draft_gateway.gateway.maintenance import MaintenanceRunner
from draft_gateway.gateway.responses import GatewayResult, fail
from draft_gateway.policy.engine import PolicyGate
from draft_gateway.policy.models import PolicyConfig
from draft_gateway.signing import Signer
from draft_gateway.storage.db import SqliteStore
from draft_gateway.utils.time import now_ms

logger = logging.getLogger(__name__)

_Parsed = DraftRequest | LegacySignRequest | LegacyExecuteRequest


class DraftGateway:
    """
    Wires the gateway components together and serves ``POST`` bodies.

    ``handle`` is synchronous; the HTTP layer runs it in a worker thread.
    Processing order for every body:

    1. Structural validation (400).
    2. Request replay for caller-supplied request ids.
    3. Per ``(actor, workspace, mode)`` rate limit (429).
    4. The protocol handler for the mode or action.
    """

    def __init__(
        self,
        *,
        store: SqliteStore,
        settings: Settings,
        policy_config: PolicyConfig,
        registry: AdapterRegistry | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if not settings.signing.secret:
            raise ValueError("A signing secret is required")
        self.store = store
        self.settings = settings
        signer = Signer(settings.signing.secret)
        roles = RoleResolver(store)
        binder = MeaningBinder(store)
        reservations = ReservationStore(
            store, settings.execution.reservation_stale_seconds, clock=clock
        )
        emitter = EventEmitter(store)

        self.registry = registry or build_default_registry()
        self.limiter = RateLimiter(store, settings.limits, clock=clock)
        self.dedupe = RequestDedupe(store, clock=clock)
        self.drafts = DraftProtocol(
            store=store,
            signer=signer,
            roles=roles,
            confirmations=ConfirmationStore(
                store, signer, binder, settings.signing.confirmation_ttl_seconds, clock=clock
            ),
            reservations=reservations,
            policy=PolicyGate(store, policy_config, clock=clock),
            registry=self.registry,
            emitter=emitter,
            clock=clock,
        )
        self.legacy = LegacyProtocol(
            store=store,
            signer=signer,
            roles=roles,
            binder=binder,
            reservations=reservations,
            emitter=emitter,
            ttl_seconds=settings.signing.legacy_ttl_seconds,
            max_batch=settings.execution.max_legacy_batch,
            clock=clock,
        )
        self.maintenance = MaintenanceRunner(
            store, settings.maintenance, settings.execution, settings.server, clock=clock
        )
        self._clock = clock

    def handle(
        self,
        body: Any,
        actor_id: str,
        request_id: str,
        *,
        replayable: bool = False,
        client_ip: str | None = None,
    ) -> GatewayResult:
        """Serve one request body.

        ``replayable`` is set when the caller chose ``request_id`` itself; only
        then is the response remembered for replay.
        """
        parsed = self._parse(body)
        if isinstance(parsed, GatewayResult):
            parsed.body["request_id"] = request_id
            return parsed
        mode = _mode_of(parsed)

        if replayable:
            stored = self.dedupe.lookup(actor_id, request_id)
            if stored is not None:
                logger.info("Request %s replayed for %s", request_id, actor_id)
                return GatewayResult(
                    status=stored.status,
                    body={**stored.body, "replay_code": REQUEST_REPLAYED, "request_id": request_id},
                )

        decision = self.limiter.check(actor_id, parsed.workspace_id, mode)
        if not decision.allowed:
            now = self._clock()
            return fail(
                gateway_error(
                    RATE_LIMITED,
                    "Too many requests",
                    status=429,
                    suggested_action=ACTION_RETRY_LATER,
                    reset_at=decision.reset_at,
                ),
                request_id,
                headers={"Retry-After": str(decision.retry_after_seconds(now))},
            )

        try:
            result = self._dispatch(parsed, actor_id, request_id, client_ip)
        except Exception:
            logger.exception("Unhandled error in %s for request %s", mode, request_id)
            result = fail(internal_error(), request_id)

        if replayable:
            self.dedupe.remember(
                actor_id=actor_id,
                request_id=request_id,
                mode=mode,
                workspace_id=parsed.workspace_id,
                status=result.status,
                body=result.body,
            )
        return result

    def _parse(self, body: Any) -> _Parsed | GatewayResult:
        if not isinstance(body, dict):
            return _invalid("Request body must be a JSON object")
        try:
            if "mode" in body:
                return DraftRequest.model_validate(body)
            action = body.get("action")
            if action == "sign":
                return LegacySignRequest.model_validate(body)
            if action == "execute":
                return LegacyExecuteRequest.model_validate(body)
        except ValidationError as exc:
            return _invalid(describe_validation_error(exc))
        return _invalid('Provide a draft "mode" or a legacy "action" of "sign" or "execute"')

    def _dispatch(
        self,
        parsed: _Parsed,
        actor_id: str,
        request_id: str,
        client_ip: str | None,
    ) -> GatewayResult:
        if isinstance(parsed, DraftRequest):
            return self.drafts.handle(parsed, actor_id, request_id, client_ip)
        if isinstance(parsed, LegacySignRequest):
            return self.legacy.sign(parsed, actor_id, request_id, client_ip)
        return self.legacy.execute(parsed, actor_id, request_id, client_ip)


def _mode_of(parsed: _Parsed) -> str:
    if isinstance(parsed, DraftRequest):
        return parsed.mode
    if isinstance(parsed, LegacySignRequest):
        return "sign"
    return "legacy_execute"


def _invalid(reason: str) -> GatewayResult:
    error = validation_error(reason)
    return GatewayResult(status=error.status, body=error.as_dict())
