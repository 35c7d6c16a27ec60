"""Best-effort audit log and domain event writer."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Any

from draft_gateway.storage.db import SqliteStore
from draft_gateway.utils.masking import redact_sensitive_fields
from draft_gateway.utils.serialization import dumps
from draft_gateway.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

# Audit actions
DRAFT_CONFIRMED = "draft_confirmed"
DRAFT_DRY_RUN_DENIED = "draft_dry_run_denied"
DRAFT_CONFIRM_DENIED = "draft_confirm_denied"
DRAFT_EXECUTE_DENIED = "draft_execute_denied"
DRAFT_EXECUTE_SUCCESS = "draft_execute_success"
DRAFT_EXECUTE_FAILURE = "draft_execute_failure"
DRAFT_PENDING_APPROVAL = "draft_pending_approval"
LEGACY_EXECUTE_SUCCESS = "brain_execute_success"
LEGACY_EXECUTE_FAILURE = "brain_execute_failure"
LEGACY_EXECUTE_DENIED = "brain_execute_denied"
LEGACY_SIGN_DENIED = "brain_sign_denied"


class EventEmitter:
    """
    Appends ``audit_logs`` and ``org_events`` rows.

    Writes never propagate failures to the caller: a failed write is logged
    and the method returns ``None``. When called inside ``SqliteStore.atomic``
    the write runs under its own savepoint, so a failure leaves the
    surrounding transaction intact.
    """

    def __init__(self, store: SqliteStore) -> None:
        self._store = store

    def record_audit(
        self,
        *,
        workspace_id: str | None,
        actor_id: str | None,
        action: str,
        entity_type: str | None = None,
        entity_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        ip_address: str | None = None,
    ) -> str | None:
        audit_id = str(uuid.uuid4())
        try:
            with self._store.atomic():
                self._store.execute(
                    """
                    INSERT INTO audit_logs (
                        id, workspace_id, actor_user_id, action, entity_type,
                        entity_id, metadata, ip_address, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        audit_id,
                        workspace_id,
                        actor_id,
                        action,
                        entity_type,
                        entity_id,
                        dumps(redact_sensitive_fields(metadata or {})),
                        ip_address,
                        utc_now_iso(),
                    ),
                )
        except sqlite3.Error as exc:
            logger.warning("Audit write failed (action=%s): %s", action, exc)
            return None
        return audit_id

    def emit_event(
        self,
        *,
        workspace_id: str,
        event_type: str,
        object_type: str | None,
        meaning_object_id: str | None,
        metadata: dict[str, Any] | None = None,
        severity_hint: str = "info",
    ) -> str | None:
        event_id = str(uuid.uuid4())
        try:
            with self._store.atomic():
                self._store.execute(
                    """
                    INSERT INTO org_events (
                        id, workspace_id, event_type, object_type,
                        meaning_object_id, severity_hint, metadata, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event_id,
                        workspace_id,
                        event_type,
                        object_type,
                        meaning_object_id,
                        severity_hint,
                        dumps(metadata or {}),
                        utc_now_iso(),
                    ),
                )
        except sqlite3.Error as exc:
            logger.warning("Event write failed (type=%s): %s", event_type, exc)
            return None
        return event_id
