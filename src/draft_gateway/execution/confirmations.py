"""Confirmation store: binds a draft id to one meaning record, once."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable

from draft_gateway.domain.drafts import Draft
from draft_gateway.errors import GatewayError, denied, validation_error
from draft_gateway.execution.meaning import MeaningBinder, meaning_from_draft
from draft_gateway.signing import Signer
from draft_gateway.storage.db import SqliteStore
from draft_gateway.storage.models import ConfirmationRecord
from draft_gateway.utils.hashing import canonical_hash
from draft_gateway.utils.time import now_ms, utc_now_iso

logger = logging.getLogger(__name__)

_TAMPER_REASON = "Draft does not match its confirmation, proposal tampered"


@dataclass(frozen=True)
class ConfirmOutcome:
    confirmation_hash: str
    expires_at: int
    meaning_object_id: str
    minted: bool
    replayed: bool


class ConfirmationStore:
    """
    Idempotent ``draft_id -> (meaning, expiry)`` binding.

    The first confirm for a draft id wins. Later confirms replay the stored
    meaning reference and expiry and re-sign for the calling actor. Minting a
    meaning record and inserting the confirmation happen in one transaction,
    so a lost race leaves no orphaned meaning record behind.
    """

    def __init__(
        self,
        store: SqliteStore,
        signer: Signer,
        binder: MeaningBinder,
        ttl_seconds: int,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._signer = signer
        self._binder = binder
        self._ttl_ms = ttl_seconds * 1000
        self._clock = clock

    def get(self, draft_id: str) -> ConfirmationRecord | None:
        row = self._store.fetch_one(
            "SELECT * FROM draft_confirmations WHERE draft_id = ?",
            (draft_id,),
        )
        if row is None:
            return None
        return ConfirmationRecord(**dict(row))

    def confirm(
        self,
        draft: Draft,
        workspace_id: str,
        actor_id: str,
        source_lang: str,
    ) -> ConfirmOutcome | GatewayError:
        existing = self.get(draft.id)
        if existing is not None:
            return self._replay(existing, draft, workspace_id, actor_id)

        if draft.meaning.is_reference:
            return self._bind_reference(draft, workspace_id, actor_id)
        return self._mint_and_bind(draft, workspace_id, actor_id, source_lang)

    def verify_binding(self, draft: Draft, workspace_id: str) -> ConfirmationRecord | GatewayError:
        """Check an execute-time draft against what confirm recorded."""
        record = self.get(draft.id)
        if record is None or record.workspace_id != workspace_id:
            return denied("Draft has not been confirmed")
        if record.meaning_object_id != draft.meaning.meaning_object_id:
            return denied(_TAMPER_REASON)
        if record.payload_hash != canonical_hash(draft.signed_content()):
            return denied(_TAMPER_REASON)
        return record

    def _replay(
        self,
        record: ConfirmationRecord,
        draft: Draft,
        workspace_id: str,
        actor_id: str,
    ) -> ConfirmOutcome | GatewayError:
        if record.workspace_id != workspace_id:
            return denied("Draft id is already bound in another workspace")
        reference = draft.meaning.meaning_object_id
        if draft.meaning.is_reference and reference != record.meaning_object_id:
            return denied(_TAMPER_REASON)
        if record.payload_hash != canonical_hash(draft.signed_content()):
            return denied(_TAMPER_REASON)
        if record.expires_at <= self._clock():
            return denied("Confirmation expired, create a new draft", status=410)
        signature = self._signer.sign(
            draft.id, workspace_id, actor_id, record.expires_at, draft.signed_content()
        )
        logger.info("Confirmation replayed for draft %s", draft.id)
        return ConfirmOutcome(
            confirmation_hash=signature,
            expires_at=record.expires_at,
            meaning_object_id=record.meaning_object_id,
            minted=False,
            replayed=True,
        )

    def _bind_reference(
        self,
        draft: Draft,
        workspace_id: str,
        actor_id: str,
    ) -> ConfirmOutcome | GatewayError:
        meaning_id = draft.meaning.meaning_object_id or ""
        meaning = self._binder.get(meaning_id, workspace_id)
        if meaning is None:
            return validation_error("Unknown meaning_object_id for this workspace")
        if meaning.draft_id is not None and meaning.draft_id != draft.id:
            return validation_error("meaning_object_id is bound to a different draft")

        expires_at = self._clock() + self._ttl_ms
        inserted = self._insert(draft, workspace_id, actor_id, meaning_id, expires_at)
        if not inserted:
            winner = self.get(draft.id)
            if winner is None:
                return denied("Confirmation could not be stored", status=409)
            return self._replay(winner, draft, workspace_id, actor_id)

        signature = self._signer.sign(
            draft.id, workspace_id, actor_id, expires_at, draft.signed_content()
        )
        return ConfirmOutcome(
            confirmation_hash=signature,
            expires_at=expires_at,
            meaning_object_id=meaning_id,
            minted=False,
            replayed=False,
        )

    def _mint_and_bind(
        self,
        draft: Draft,
        workspace_id: str,
        actor_id: str,
        source_lang: str,
    ) -> ConfirmOutcome | GatewayError:
        meaning_type, document = meaning_from_draft(draft)
        expires_at = self._clock() + self._ttl_ms
        meaning_id: str | None = None

        if self._binder.find_for_draft(draft.id) is not None:
            # Confirmed before and since garbage-collected.
            return denied("Confirmation expired, create a new draft", status=410)

        with self._store.atomic():
            # The write lock is held from here, so the insert below cannot lose.
            winner = self.get(draft.id)
            if winner is None:
                meaning_id = self._binder.mint(
                    workspace_id=workspace_id,
                    actor_id=actor_id,
                    meaning_type=meaning_type,
                    document=document,
                    source_lang=str(
                        (draft.meaning.meaning_payload or {}).get("source_lang") or source_lang
                    ),
                    draft_id=draft.id,
                )
                self._insert(draft, workspace_id, actor_id, meaning_id, expires_at)

        if winner is not None:
            return self._replay(winner, draft, workspace_id, actor_id)

        signature = self._signer.sign(
            draft.id, workspace_id, actor_id, expires_at, draft.signed_content()
        )
        return ConfirmOutcome(
            confirmation_hash=signature,
            expires_at=expires_at,
            meaning_object_id=meaning_id,
            minted=True,
            replayed=False,
        )

    def _insert(
        self,
        draft: Draft,
        workspace_id: str,
        actor_id: str,
        meaning_id: str,
        expires_at: int,
    ) -> bool:
        rows = self._store.execute(
            """
            INSERT OR IGNORE INTO draft_confirmations (
                draft_id, workspace_id, meaning_object_id, actor_id,
                expires_at, payload_hash, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                draft.id,
                workspace_id,
                meaning_id,
                actor_id,
                expires_at,
                canonical_hash(draft.signed_content()),
                utc_now_iso(),
            ),
        )
        return rows == 1
