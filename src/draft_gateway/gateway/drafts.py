"""The draft protocol: dry_run, confirm and execute."""

from __future__ import annotations

import logging
from typing import Any, Callable

from draft_gateway.adapters import AdapterRegistry, ExecuteResult, ExecutionContext
from draft_gateway.audit import events
from draft_gateway.audit.events import EventEmitter
from draft_gateway.auth.roles import RoleResolver, WorkspaceRole, has_required_role
from draft_gateway.domain.drafts import DraftRequest
from draft_gateway.errors import (
    ACTION_ELEVATE,
    ACTION_NONE,
    ACTION_REGENERATE,
    ACTION_RETRY_LATER,
    ACTION_WAIT_APPROVAL,
    ALREADY_EXECUTED,
    EXECUTION_FAILED,
    INTERNAL_ERROR,
    MODULE_DISABLED,
    PENDING_APPROVAL,
    GatewayError,
    denied,
    gateway_error,
    internal_error,
    validation_error,
)
from draft_gateway.execution.confirmations import ConfirmationStore
from draft_gateway.execution.reservations import ReservationStore
from draft_gateway.gateway.responses import GatewayResult, fail, ok, replay_reservation
from draft_gateway.policy.engine import PolicyGate
from draft_gateway.signing import Signer
from draft_gateway.storage.db import SqliteStore
from draft_gateway.utils.time import now_ms

logger = logging.getLogger(__name__)

_NOT_A_MEMBER = "Not a workspace member"


class DraftProtocol:
    """
    Runs one draft protocol call for an authenticated actor.

    Every method returns a ``GatewayResult``; component errors arrive as
    ``GatewayError`` values and are rendered here.
    """

    def __init__(
        self,
        *,
        store: SqliteStore,
        signer: Signer,
        roles: RoleResolver,
        confirmations: ConfirmationStore,
        reservations: ReservationStore,
        policy: PolicyGate,
        registry: AdapterRegistry,
        emitter: EventEmitter,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._signer = signer
        self._roles = roles
        self._confirmations = confirmations
        self._reservations = reservations
        self._policy = policy
        self._registry = registry
        self._emitter = emitter
        self._clock = clock

    def handle(
        self,
        request: DraftRequest,
        actor_id: str,
        request_id: str,
        client_ip: str | None = None,
    ) -> GatewayResult:
        if request.mode == "dry_run":
            return self.dry_run(request, actor_id, request_id, client_ip)
        if request.mode == "confirm":
            return self.confirm(request, actor_id, request_id, client_ip)
        return self.execute(request, actor_id, request_id, client_ip)

    def dry_run(
        self,
        request: DraftRequest,
        actor_id: str,
        request_id: str,
        client_ip: str | None = None,
    ) -> GatewayResult:
        draft = request.draft
        role = self._roles.resolve(actor_id, request.workspace_id)
        if role is None:
            return self._deny(
                events.DRAFT_DRY_RUN_DENIED,
                denied(_NOT_A_MEMBER, suggested_action=ACTION_ELEVATE),
                request,
                actor_id,
                request_id,
                client_ip,
            )

        adapter = self._registry.resolve(draft)
        if isinstance(adapter, GatewayError):
            return fail(adapter, request_id)

        result = adapter.dry_run(draft, self._context(role, request_id))
        if not has_required_role(role.role, draft.required_role):
            result.block(f"Requires {draft.required_role} role, you have {role.role}")
        return ok(result.as_dict(), request_id)

    def confirm(
        self,
        request: DraftRequest,
        actor_id: str,
        request_id: str,
        client_ip: str | None = None,
    ) -> GatewayResult:
        draft = request.draft
        role = self._roles.resolve(actor_id, request.workspace_id)
        if role is None:
            return self._deny(
                events.DRAFT_CONFIRM_DENIED,
                denied(_NOT_A_MEMBER, suggested_action=ACTION_ELEVATE),
                request,
                actor_id,
                request_id,
                client_ip,
            )

        adapter = self._registry.resolve(draft)
        if isinstance(adapter, GatewayError):
            return fail(adapter, request_id)

        outcome = self._confirmations.confirm(
            draft, request.workspace_id, actor_id, role.source_lang
        )
        if isinstance(outcome, GatewayError):
            return fail(outcome, request_id)

        if not outcome.replayed:
            self._emitter.record_audit(
                workspace_id=request.workspace_id,
                actor_id=actor_id,
                action=events.DRAFT_CONFIRMED,
                entity_type="draft",
                entity_id=draft.id,
                metadata={
                    "request_id": request_id,
                    "draft_type": draft.type,
                    "meaning_object_id": outcome.meaning_object_id,
                    "minted": outcome.minted,
                },
                ip_address=client_ip,
            )

        body: dict[str, Any] = {
            "confirmation_hash": outcome.confirmation_hash,
            "expires_at": outcome.expires_at,
        }
        if not draft.meaning.is_reference:
            body["meaning_object_id"] = outcome.meaning_object_id
        return ok(body, request_id)

    def execute(
        self,
        request: DraftRequest,
        actor_id: str,
        request_id: str,
        client_ip: str | None = None,
    ) -> GatewayResult:
        draft = request.draft
        workspace_id = request.workspace_id

        def deny(error: GatewayError) -> GatewayResult:
            return self._deny(
                events.DRAFT_EXECUTE_DENIED, error, request, actor_id, request_id, client_ip
            )

        role = self._roles.resolve(actor_id, workspace_id)
        if role is None:
            return deny(denied(_NOT_A_MEMBER, suggested_action=ACTION_ELEVATE))

        if not draft.meaning.is_reference:
            return fail(
                validation_error("Execute requires a meaning_object_id from confirm"), request_id
            )
        if not request.confirmation_hash or draft.expires_at is None:
            return fail(
                validation_error("Execute requires confirmation_hash and draft.expires_at"),
                request_id,
            )
        if self._clock() >= draft.expires_at:
            return deny(denied("Confirmation expired, create a new draft", status=410))

        if not has_required_role(role.role, draft.required_role):
            return deny(
                denied(
                    f"Requires {draft.required_role} role, you have {role.role}",
                    suggested_action=ACTION_ELEVATE,
                )
            )

        signed = self._signer.verify(
            request.confirmation_hash,
            draft.id,
            workspace_id,
            actor_id,
            draft.expires_at,
            draft.signed_content(),
        )
        if not signed:
            return deny(denied("Hash mismatch, proposal tampered or user changed"))

        binding = self._confirmations.verify_binding(draft, workspace_id)
        if isinstance(binding, GatewayError):
            return deny(binding)

        adapter = self._registry.resolve(draft)
        if isinstance(adapter, GatewayError):
            return fail(adapter, request_id)

        decision = self._policy.evaluate(workspace_id, role.role, draft.target_module)
        if decision.module_disabled:
            return deny(
                gateway_error(
                    MODULE_DISABLED,
                    "; ".join(decision.reasons),
                    status=403,
                    suggested_action=ACTION_NONE,
                )
            )
        if decision.require_approval:
            approval_id = self._policy.record_pending_approval(draft, workspace_id, actor_id)
            self._emitter.record_audit(
                workspace_id=workspace_id,
                actor_id=actor_id,
                action=events.DRAFT_PENDING_APPROVAL,
                entity_type="draft",
                entity_id=draft.id,
                metadata={"request_id": request_id, "approval_id": approval_id},
                ip_address=client_ip,
            )
            return fail(
                gateway_error(
                    PENDING_APPROVAL,
                    "; ".join(decision.reasons),
                    status=202,
                    suggested_action=ACTION_WAIT_APPROVAL,
                    approval_id=approval_id,
                ),
                request_id,
            )

        reservation = self._reservations.reserve(
            draft_id=draft.id,
            workspace_id=workspace_id,
            agent_type=adapter.name,
            draft_type=draft.type,
            actor_id=actor_id,
            request_id=request_id,
        )
        if reservation.kind == "replay" and reservation.record is not None:
            logger.info("Execute replayed for draft %s", draft.id)
            return replay_reservation(reservation.record, request_id)
        if reservation.kind == "conflict":
            return fail(
                gateway_error(
                    ALREADY_EXECUTED,
                    "Draft id is already reserved in another workspace or by another agent",
                    status=409,
                    suggested_action=ACTION_REGENERATE,
                ),
                request_id,
            )
        if reservation.kind != "acquired" or reservation.claim_token is None:
            return fail(
                gateway_error(
                    ALREADY_EXECUTED,
                    "This draft is already being executed",
                    status=409,
                    suggested_action=ACTION_RETRY_LATER,
                ),
                request_id,
            )

        ctx = self._context(role, request_id, meaning_object_id=binding.meaning_object_id)
        claim_token = reservation.claim_token
        audit_metadata = {
            "request_id": request_id,
            "draft_type": draft.type,
            "agent_type": adapter.name,
            "meaning_object_id": binding.meaning_object_id,
        }

        finalized = False
        audit_log_id: str | None = None
        try:
            with self._store.atomic() as tx:
                result = adapter.execute(draft, ctx)
                if result.success:
                    audit_log_id = self._emitter.record_audit(
                        workspace_id=workspace_id,
                        actor_id=actor_id,
                        action=events.DRAFT_EXECUTE_SUCCESS,
                        entity_type="draft",
                        entity_id=draft.id,
                        metadata={**audit_metadata, "entities": result.entities},
                        ip_address=client_ip,
                    )
                    finalized = self._reservations.finalize(
                        draft.id,
                        claim_token,
                        status="success",
                        entities=result.entities,
                        audit_log_id=audit_log_id,
                        http_status=200,
                    )
                    if not finalized:
                        tx.abort()
                else:
                    tx.abort()
        except Exception:
            logger.exception("Unexpected error executing draft %s", draft.id)
            self._reservations.finalize(
                draft.id,
                claim_token,
                status="failed",
                error="Internal server error",
                error_code=INTERNAL_ERROR,
                http_status=500,
            )
            return fail(internal_error(), request_id)

        if not result.success:
            return self._record_failure(
                request, actor_id, request_id, client_ip, claim_token, result, audit_metadata
            )
        if not finalized:
            return fail(
                gateway_error(
                    ALREADY_EXECUTED,
                    "Execution was taken over by another attempt",
                    status=409,
                    suggested_action=ACTION_NONE,
                ),
                request_id,
            )

        self._emitter.emit_event(
            workspace_id=workspace_id,
            event_type="draft_executed",
            object_type=draft.type,
            meaning_object_id=binding.meaning_object_id,
            metadata={"draft_id": draft.id, "entities": result.entities},
        )
        logger.info(
            "Draft %s executed by %s (%d entities)", draft.id, actor_id, len(result.entities)
        )
        return ok(
            {
                "success": True,
                "entities": result.entities,
                "audit_log_id": audit_log_id,
                "replayed": False,
            },
            request_id,
        )

    def _record_failure(
        self,
        request: DraftRequest,
        actor_id: str,
        request_id: str,
        client_ip: str | None,
        claim_token: str,
        result: ExecuteResult,
        audit_metadata: dict[str, Any],
    ) -> GatewayResult:
        draft = request.draft
        reason = result.error or "Execution failed"
        audit_log_id = self._emitter.record_audit(
            workspace_id=request.workspace_id,
            actor_id=actor_id,
            action=events.DRAFT_EXECUTE_FAILURE,
            entity_type="draft",
            entity_id=draft.id,
            metadata={**audit_metadata, "error": reason},
            ip_address=client_ip,
        )
        self._reservations.finalize(
            draft.id,
            claim_token,
            status="failed",
            audit_log_id=audit_log_id,
            error=reason,
            error_code=EXECUTION_FAILED,
            http_status=400,
        )
        logger.info("Draft %s failed: %s", draft.id, reason)
        return fail(
            gateway_error(EXECUTION_FAILED, reason, suggested_action=ACTION_REGENERATE),
            request_id,
        )

    def _deny(
        self,
        action: str,
        error: GatewayError,
        request: DraftRequest,
        actor_id: str,
        request_id: str,
        client_ip: str | None,
    ) -> GatewayResult:
        self._emitter.record_audit(
            workspace_id=request.workspace_id,
            actor_id=actor_id,
            action=action,
            entity_type="draft",
            entity_id=request.draft.id,
            metadata={"request_id": request_id, "code": error.code, "reason": error.reason},
            ip_address=client_ip,
        )
        return fail(error, request_id)

    def _context(
        self,
        role: WorkspaceRole,
        request_id: str,
        meaning_object_id: str | None = None,
    ) -> ExecutionContext:
        return ExecutionContext(
            workspace_id=role.workspace_id,
            actor_id=role.user_id,
            role=role.role,
            request_id=request_id,
            store=self._store,
            source_lang=role.source_lang,
            meaning_object_id=meaning_object_id,
        )
