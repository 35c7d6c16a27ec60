"""Built-in executor for single-step legacy proposals."""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from typing import Any

from draft_gateway.adapters.base import ExecutionContext, entity_ref
from draft_gateway.adapters.teamwork import (
    apply_update,
    check_update,
    insert_goal,
    insert_idea,
    insert_plan,
    insert_task,
)
from draft_gateway.domain.drafts import LegacyProposal

logger = logging.getLogger(__name__)

_CREATORS = {
    "task": insert_task,
    "goal": insert_goal,
    "plan": insert_plan,
    "idea": insert_idea,
}


@dataclass
class LegacyResult:
    success: bool
    result: dict[str, Any] | None = None
    entities: list[dict[str, str]] = field(default_factory=list)
    error: str | None = None


class LegacyExecutor:
    """Applies task/goal/plan/idea creates and whitelisted updates.

    Creates require ``ctx.meaning_object_id``; the caller mints it in the same
    transaction.
    """

    def execute(self, proposal: LegacyProposal, ctx: ExecutionContext) -> LegacyResult:
        try:
            if proposal.type == "update":
                return self._update(proposal, ctx)
            title = proposal.title.strip() or str(proposal.payload.get("title") or "").strip()
            if not title:
                return LegacyResult(success=False, error=f"{proposal.type} requires a title")
            entity_id = _CREATORS[proposal.type](ctx, title, proposal.payload)
        except (sqlite3.Error, ValueError) as exc:
            logger.warning("Legacy execute failed for proposal %s: %s", proposal.id, exc)
            return LegacyResult(success=False, error=str(exc))
        return LegacyResult(
            success=True,
            result={"type": proposal.type, "id": entity_id},
            entities=[entity_ref(proposal.type, entity_id)],
        )

    @staticmethod
    def _update(proposal: LegacyProposal, ctx: ExecutionContext) -> LegacyResult:
        table, allowed, problems = check_update(proposal.payload)
        if problems or table is None:
            return LegacyResult(success=False, error="; ".join(problems))
        entity_id = str(proposal.payload["entity_id"])
        if apply_update(ctx, table, entity_id, allowed) != 1:
            return LegacyResult(success=False, error=f"{table} entity not found in this workspace")
        return LegacyResult(
            success=True,
            result={"type": "update", "entity_type": table, "id": entity_id},
            entities=[entity_ref(table, entity_id, "update")],
        )
