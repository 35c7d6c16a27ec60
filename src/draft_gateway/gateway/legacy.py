"""The single-step legacy protocol: batch sign, then execute one proposal."""

from __future__ import annotations

import logging
import uuid
from typing import Any, Callable

from draft_gateway.adapters import ExecutionContext
from draft_gateway.adapters.legacy import LegacyExecutor, LegacyResult
from draft_gateway.audit import events
from draft_gateway.audit.events import EventEmitter
from draft_gateway.auth.roles import RoleResolver, has_required_role
from draft_gateway.domain.drafts import LegacyExecuteRequest, LegacySignRequest
from draft_gateway.errors import (
    ACTION_ELEVATE,
    ACTION_REGENERATE,
    ACTION_RETRY_LATER,
    ALREADY_EXECUTED,
    EXECUTION_FAILED,
    INTERNAL_ERROR,
    GatewayError,
    denied,
    gateway_error,
    internal_error,
    validation_error,
)
from draft_gateway.execution.meaning import MeaningBinder, meaning_from_legacy
from draft_gateway.execution.reservations import ReservationStore
from draft_gateway.gateway.responses import GatewayResult, fail, ok, replay_reservation
from draft_gateway.signing import Signer
from draft_gateway.storage.db import SqliteStore
from draft_gateway.utils.time import now_ms

logger = logging.getLogger(__name__)

LEGACY_AGENT = "legacy"
_NOT_A_MEMBER = "Not a workspace member"


class LegacyProtocol:
    def __init__(
        self,
        *,
        store: SqliteStore,
        signer: Signer,
        roles: RoleResolver,
        binder: MeaningBinder,
        reservations: ReservationStore,
        emitter: EventEmitter,
        ttl_seconds: int,
        max_batch: int,
        executor: LegacyExecutor | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._signer = signer
        self._roles = roles
        self._binder = binder
        self._reservations = reservations
        self._emitter = emitter
        self._ttl_ms = ttl_seconds * 1000
        self._max_batch = max_batch
        self._executor = executor or LegacyExecutor()
        self._clock = clock

    def sign(
        self,
        request: LegacySignRequest,
        actor_id: str,
        request_id: str,
        client_ip: str | None = None,
    ) -> GatewayResult:
        count = len(request.proposals)
        if count == 0 or count > self._max_batch:
            error = validation_error(f"proposals must be 1-{self._max_batch} items")
            return fail(error, request_id)

        role = self._roles.resolve(actor_id, request.workspace_id)
        if role is None:
            self._emitter.record_audit(
                workspace_id=request.workspace_id,
                actor_id=actor_id,
                action=events.LEGACY_SIGN_DENIED,
                metadata={"request_id": request_id, "proposal_count": count},
                ip_address=client_ip,
            )
            return fail(denied(_NOT_A_MEMBER, suggested_action=ACTION_ELEVATE), request_id)

        expires_at = self._clock() + self._ttl_ms
        signed: list[dict[str, Any]] = []
        for proposal in request.proposals:
            proposal_id = proposal.id or str(uuid.uuid4())
            entry = proposal.model_dump(mode="json", exclude_none=True)
            entry.update(
                id=proposal_id,
                confirmation_hash=self._signer.sign_legacy(
                    proposal_id, request.workspace_id, actor_id, expires_at
                ),
                expires_at=expires_at,
            )
            signed.append(entry)

        logger.info("Signed %d legacy proposals for %s", count, actor_id)
        return ok({"proposals": signed}, request_id)

    def execute(
        self,
        request: LegacyExecuteRequest,
        actor_id: str,
        request_id: str,
        client_ip: str | None = None,
    ) -> GatewayResult:
        proposal = request.proposal
        workspace_id = request.workspace_id

        def deny(error: GatewayError) -> GatewayResult:
            self._emitter.record_audit(
                workspace_id=workspace_id,
                actor_id=actor_id,
                action=events.LEGACY_EXECUTE_DENIED,
                entity_type=proposal.type,
                entity_id=proposal.id,
                metadata={
                    "request_id": request_id,
                    "proposal_id": proposal.id,
                    "code": error.code,
                    "reason": error.reason,
                },
                ip_address=client_ip,
            )
            return fail(error, request_id)

        if not proposal.id or not proposal.confirmation_hash or proposal.expires_at is None:
            return deny(validation_error("Invalid proposal structure"))

        if self._clock() >= proposal.expires_at:
            return deny(denied("Proposal expired", status=410))

        valid = self._signer.verify_legacy(
            proposal.confirmation_hash, proposal.id, workspace_id, actor_id, proposal.expires_at
        )
        if not valid:
            return deny(denied("Hash mismatch, proposal tampered or user changed"))

        role = self._roles.resolve(actor_id, workspace_id)
        if role is None:
            return deny(denied(_NOT_A_MEMBER, suggested_action=ACTION_ELEVATE))
        if not has_required_role(role.role, proposal.required_role):
            return deny(
                denied(
                    f"Requires {proposal.required_role} role, you have {role.role}",
                    suggested_action=ACTION_ELEVATE,
                )
            )

        reservation = self._reservations.reserve(
            draft_id=proposal.id,
            workspace_id=workspace_id,
            agent_type=LEGACY_AGENT,
            draft_type=proposal.type,
            actor_id=actor_id,
            request_id=request_id,
        )
        if reservation.kind == "replay" and reservation.record is not None:
            return replay_reservation(reservation.record, request_id, include_result=True)
        if reservation.kind != "acquired" or reservation.claim_token is None:
            reason = (
                "Proposal id is already reserved in another workspace or by a draft"
                if reservation.kind == "conflict"
                else "This proposal has already been executed"
            )
            return fail(
                gateway_error(
                    ALREADY_EXECUTED, reason, status=409, suggested_action=ACTION_RETRY_LATER
                ),
                request_id,
            )

        claim_token = reservation.claim_token
        audit_metadata = {
            "request_id": request_id,
            "proposal_id": proposal.id,
            "proposal_type": proposal.type,
            "proposal_title": proposal.title,
        }
        ctx = ExecutionContext(
            workspace_id=workspace_id,
            actor_id=actor_id,
            role=role.role,
            request_id=request_id,
            store=self._store,
            source_lang=role.source_lang,
        )

        finalized = False
        audit_log_id: str | None = None
        try:
            with self._store.atomic() as tx:
                meaning_type, document = meaning_from_legacy(proposal, proposal.id)
                ctx.meaning_object_id = self._binder.mint(
                    workspace_id=workspace_id,
                    actor_id=actor_id,
                    meaning_type=meaning_type,
                    document=document,
                    source_lang=role.source_lang,
                    draft_id=None,
                )
                result = self._executor.execute(proposal, ctx)
                if result.success:
                    audit_log_id = self._emitter.record_audit(
                        workspace_id=workspace_id,
                        actor_id=actor_id,
                        action=events.LEGACY_EXECUTE_SUCCESS,
                        entity_type=proposal.type,
                        entity_id=(result.result or {}).get("id", proposal.id),
                        metadata=audit_metadata,
                        ip_address=client_ip,
                    )
                    finalized = self._reservations.finalize(
                        proposal.id,
                        claim_token,
                        status="success",
                        entities=result.entities,
                        result=result.result,
                        audit_log_id=audit_log_id,
                        http_status=200,
                    )
                    if not finalized:
                        tx.abort()
                else:
                    tx.abort()
        except Exception:
            logger.exception("Unexpected error executing legacy proposal %s", proposal.id)
            self._reservations.finalize(
                proposal.id,
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
                ),
                request_id,
            )

        self._emitter.emit_event(
            workspace_id=workspace_id,
            event_type="proposal_executed",
            object_type=proposal.type,
            meaning_object_id=ctx.meaning_object_id,
            metadata={"proposal_id": proposal.id, "entities": result.entities},
        )
        return ok(
            {
                "success": True,
                "result": result.result,
                "entities": result.entities,
                "audit_log_id": audit_log_id,
                "replayed": False,
            },
            request_id,
        )

    def _record_failure(
        self,
        request: LegacyExecuteRequest,
        actor_id: str,
        request_id: str,
        client_ip: str | None,
        claim_token: str,
        result: LegacyResult,
        audit_metadata: dict[str, Any],
    ) -> GatewayResult:
        proposal_id = str(request.proposal.id)
        reason = result.error or "Execution failed"
        audit_log_id = self._emitter.record_audit(
            workspace_id=request.workspace_id,
            actor_id=actor_id,
            action=events.LEGACY_EXECUTE_FAILURE,
            entity_type=request.proposal.type,
            entity_id=proposal_id,
            metadata={**audit_metadata, "error": reason},
            ip_address=client_ip,
        )
        self._reservations.finalize(
            proposal_id,
            claim_token,
            status="failed",
            audit_log_id=audit_log_id,
            error=reason,
            error_code=EXECUTION_FAILED,
            http_status=400,
        )
        return fail(
            gateway_error(EXECUTION_FAILED, reason, suggested_action=ACTION_REGENERATE),
            request_id,
        )
