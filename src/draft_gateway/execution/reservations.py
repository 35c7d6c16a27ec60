"""Reservation-first idempotency for draft execution."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Literal

from draft_gateway.storage.db import SqliteStore
from draft_gateway.storage.models import ReservationRecord
from draft_gateway.utils.serialization import dumps, loads_or
from draft_gateway.utils.time import now_ms

logger = logging.getLogger(__name__)

RESERVED = "reserved"
SUCCESS = "success"
FAILED = "failed"

DEFAULT_STALE_SECONDS = 600
_MAX_CLAIM_ATTEMPTS = 3

ReserveKind = Literal["acquired", "in_progress", "replay", "conflict"]


@dataclass(frozen=True)
class ReserveOutcome:
    """Result of ``ReservationStore.reserve``.

    - ``acquired``: the caller owns the claim and must finalize it with
      ``claim_token``; ``taken_over`` is set when a stale claim was reclaimed.
    - ``in_progress``: another attempt holds a fresh claim.
    - ``replay``: the draft already reached a terminal state; ``record``
      carries the stored outcome.
    - ``conflict``: the draft id is reserved under a different workspace or
      agent.
    """

    kind: ReserveKind
    claim_token: str | None = None
    record: ReservationRecord | None = None
    taken_over: bool = False


def stored_entities(record: ReservationRecord) -> list[dict[str, Any]]:
    return loads_or(record.entities_json, [])


def stored_result(record: ReservationRecord) -> dict[str, Any] | None:
    return loads_or(record.result_json, None)


class ReservationStore:
    """
    Exclusive per-draft execution claims in ``executed_drafts``.

    Coordination relies only on the primary key and on conditional updates
    keyed by ``claim_token``:

    - ``reserve`` inserts with ``INSERT OR IGNORE``; losers read the winner.
    - A ``reserved`` row older than the staleness window is taken over with a
      compare-and-swap on the previous ``claim_token``.
    - ``finalize`` only succeeds for the current claim holder, once.
    """

    def __init__(
        self,
        store: SqliteStore,
        stale_after_seconds: int = DEFAULT_STALE_SECONDS,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._stale_ms = stale_after_seconds * 1000
        self._clock = clock

    def get(self, draft_id: str) -> ReservationRecord | None:
        row = self._store.fetch_one(
            "SELECT * FROM executed_drafts WHERE draft_id = ?",
            (draft_id,),
        )
        if row is None:
            return None
        return ReservationRecord(**dict(row))

    def reserve(
        self,
        *,
        draft_id: str,
        workspace_id: str,
        agent_type: str,
        draft_type: str,
        actor_id: str,
        request_id: str | None,
    ) -> ReserveOutcome:
        for _ in range(_MAX_CLAIM_ATTEMPTS):
            token = uuid.uuid4().hex
            now = self._clock()
            inserted = self._store.execute(
                """
                INSERT OR IGNORE INTO executed_drafts (
                    draft_id, workspace_id, agent_type, draft_type, actor_id,
                    request_id, status, claim_token, reserved_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    draft_id,
                    workspace_id,
                    agent_type,
                    draft_type,
                    actor_id,
                    request_id,
                    RESERVED,
                    token,
                    now,
                ),
            )
            if inserted == 1:
                return ReserveOutcome("acquired", claim_token=token)

            existing = self.get(draft_id)
            if existing is None:
                # Removed between our insert and read (maintenance); try again.
                continue
            if existing.workspace_id != workspace_id or existing.agent_type != agent_type:
                logger.warning(
                    "Draft %s reserved as %s/%s, requested as %s/%s",
                    draft_id,
                    existing.workspace_id,
                    existing.agent_type,
                    workspace_id,
                    agent_type,
                )
                return ReserveOutcome("conflict", record=existing)
            if existing.terminal:
                return ReserveOutcome("replay", record=existing)
            if now - existing.reserved_at < self._stale_ms:
                return ReserveOutcome("in_progress", record=existing)

            taken = self._store.execute(
                """
                UPDATE executed_drafts
                SET claim_token = ?, reserved_at = ?, actor_id = ?, request_id = ?,
                    attempts = attempts + 1
                WHERE draft_id = ? AND status = ? AND claim_token = ?
                """,
                (token, now, actor_id, request_id, draft_id, RESERVED, existing.claim_token),
            )
            if taken == 1:
                logger.warning(
                    "Stale reservation for draft %s taken over (reserved %d ms ago)",
                    draft_id,
                    now - existing.reserved_at,
                )
                return ReserveOutcome("acquired", claim_token=token, taken_over=True)

        current = self.get(draft_id)
        if current is not None and current.terminal:
            return ReserveOutcome("replay", record=current)
        return ReserveOutcome("in_progress", record=current)

    def finalize(
        self,
        draft_id: str,
        claim_token: str,
        *,
        status: Literal["success", "failed"],
        entities: list[dict[str, Any]] | None = None,
        result: dict[str, Any] | None = None,
        audit_log_id: str | None = None,
        error: str | None = None,
        error_code: str | None = None,
        http_status: int | None = None,
    ) -> bool:
        """Move ``reserved -> status``. Returns False if the claim was lost."""
        updated = self._store.execute(
            """
            UPDATE executed_drafts
            SET status = ?, entities_json = ?, result_json = ?, audit_log_id = ?,
                error = ?, error_code = ?, http_status = ?, finalized_at = ?
            WHERE draft_id = ? AND status = ? AND claim_token = ?
            """,
            (
                status,
                dumps(entities or []),
                dumps(result) if result is not None else None,
                audit_log_id,
                error,
                error_code,
                http_status,
                self._clock(),
                draft_id,
                RESERVED,
                claim_token,
            ),
        )
        if updated != 1:
            logger.warning("Finalize for draft %s lost its claim", draft_id)
            return False
        return True
