"""Row records returned by the store-backed components."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class MeaningRecord:
    id: str
    workspace_id: str
    created_by: str
    type: str
    source_lang: str
    meaning_json: str
    draft_id: str | None
    created_at: str
    deleted_at: str | None = None


@dataclass
class ConfirmationRecord:
    draft_id: str
    workspace_id: str
    meaning_object_id: str
    actor_id: str
    expires_at: int
    payload_hash: str
    created_at: str


@dataclass
class ReservationRecord:
    draft_id: str
    workspace_id: str
    agent_type: str
    draft_type: str
    actor_id: str
    request_id: str | None
    status: str
    claim_token: str
    entities_json: str | None
    result_json: str | None
    audit_log_id: str | None
    error: str | None
    error_code: str | None
    http_status: int | None
    attempts: int
    reserved_at: int
    finalized_at: int | None

    @property
    def terminal(self) -> bool:
        return self.status in ("success", "failed")


@dataclass
class WorkspaceRecord:
    id: str
    company_id: str | None
    name: str
    default_locale: str
