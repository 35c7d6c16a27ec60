"""Meaning records: the durable description of what a draft does and why."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from draft_gateway.domain.drafts import Draft, LegacyProposal
from draft_gateway.storage.db import SqliteStore
from draft_gateway.storage.models import MeaningRecord
from draft_gateway.utils.serialization import dumps
from draft_gateway.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

MEANING_VERSION = "v1"
_DEFAULT_CONFIDENCE = 0.9

# Draft types that describe an update to an existing entity.
_UPDATE_TYPES = frozenset({"update"})


def _intent_for(draft_type: str) -> str:
    return "update" if draft_type in _UPDATE_TYPES else "create"


def meaning_from_draft(draft: Draft) -> tuple[str, dict[str, Any]]:
    """Build the v1 meaning document for a draft's inline meaning payload."""
    payload = dict(draft.meaning.meaning_payload or {})
    meaning_type = str(payload.get("type") or draft.type)
    document: dict[str, Any] = {
        "version": MEANING_VERSION,
        "type": meaning_type,
        "intent": str(payload.get("intent") or _intent_for(draft.type)),
        "subject": str(payload.get("subject") or draft.title),
        "description": payload.get("description", draft.description or draft.intent or ""),
        "constraints": payload.get("constraints") or {},
        "metadata": {
            "created_from": "draft_gateway",
            "draft_id": draft.id,
            "target_module": draft.target_module,
            "confidence": payload.get("confidence", _DEFAULT_CONFIDENCE),
        },
    }
    return meaning_type, document


def meaning_from_legacy(proposal: LegacyProposal, proposal_id: str) -> tuple[str, dict[str, Any]]:
    payload = proposal.payload
    document: dict[str, Any] = {
        "version": MEANING_VERSION,
        "type": proposal.type,
        "intent": _intent_for(proposal.type),
        "subject": proposal.title or str(payload.get("title", "")),
        "description": str(payload.get("description", "")),
        "constraints": {},
        "metadata": {
            "created_from": "brain_execution",
            "proposal_id": proposal_id,
            "confidence": _DEFAULT_CONFIDENCE,
        },
    }
    return proposal.type, document


class MeaningBinder:
    """Mints and looks up meaning records.

    ``mint`` performs a single insert and is meant to be called inside the
    caller's ``SqliteStore.atomic`` block so the record commits together with
    whatever binds it.
    """

    def __init__(self, store: SqliteStore) -> None:
        self._store = store

    def mint(
        self,
        *,
        workspace_id: str,
        actor_id: str,
        meaning_type: str,
        document: dict[str, Any],
        source_lang: str,
        draft_id: str | None,
    ) -> str:
        meaning_id = str(uuid.uuid4())
        self._store.execute(
            """
            INSERT INTO meaning_objects (
                id, workspace_id, created_by, type, source_lang,
                meaning_json, draft_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                meaning_id,
                workspace_id,
                actor_id,
                meaning_type,
                source_lang,
                dumps(document),
                draft_id,
                utc_now_iso(),
            ),
        )
        logger.info("Meaning %s minted for draft %s", meaning_id, draft_id)
        return meaning_id

    def find_for_draft(self, draft_id: str) -> MeaningRecord | None:
        row = self._store.fetch_one(
            "SELECT * FROM meaning_objects WHERE draft_id = ?",
            (draft_id,),
        )
        if row is None:
            return None
        return MeaningRecord(**dict(row))

    def get(self, meaning_id: str, workspace_id: str) -> MeaningRecord | None:
        row = self._store.fetch_one(
            "SELECT * FROM meaning_objects WHERE id = ? AND workspace_id = ? "
            "AND deleted_at IS NULL",
            (meaning_id, workspace_id),
        )
        if row is None:
            return None
        return MeaningRecord(**dict(row))
