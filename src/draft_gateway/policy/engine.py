"""Workspace execution policy evaluation."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable

from draft_gateway.auth.roles import OWNER, has_required_role
from draft_gateway.domain.drafts import Draft
from draft_gateway.policy.models import PolicyConfig
from draft_gateway.storage.db import SqliteStore
from draft_gateway.utils.serialization import dumps, loads_or
from draft_gateway.utils.time import now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EffectivePolicy:
    require_owner_approval: bool
    enabled_modules: frozenset[str]
    source: str


@dataclass
class PolicyDecision:
    allowed: bool
    require_approval: bool
    reasons: list[str] = field(default_factory=list)
    module_disabled: bool = False


class PolicyGate:
    """
    Resolves and applies a workspace's execution policy.

    Precedence: a ``workspace_policies`` row, then the workspace's override in
    ``policy.yaml``, then the ``policy.yaml`` defaults. ``enabled_modules`` is
    an exact allow-list.
    """

    def __init__(
        self,
        store: SqliteStore,
        config: PolicyConfig,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._config = config
        self._clock = clock

    def policy_for(self, workspace_id: str) -> EffectivePolicy:
        row = self._store.fetch_one(
            "SELECT require_owner_approval, enabled_modules FROM workspace_policies "
            "WHERE workspace_id = ?",
            (workspace_id,),
        )
        if row is not None:
            modules = loads_or(row["enabled_modules"], [])
            if not isinstance(modules, list):
                logger.warning("Malformed enabled_modules for workspace %s", workspace_id)
                modules = []
            return EffectivePolicy(
                require_owner_approval=bool(row["require_owner_approval"]),
                enabled_modules=frozenset(str(m) for m in modules),
                source="workspace",
            )

        defaults = self._config.defaults
        override = self._config.workspaces.get(workspace_id)
        if override is None:
            return EffectivePolicy(
                require_owner_approval=defaults.require_owner_approval,
                enabled_modules=frozenset(defaults.enabled_modules),
                source="defaults",
            )
        return EffectivePolicy(
            require_owner_approval=(
                override.require_owner_approval
                if override.require_owner_approval is not None
                else defaults.require_owner_approval
            ),
            enabled_modules=frozenset(
                override.enabled_modules
                if override.enabled_modules is not None
                else defaults.enabled_modules
            ),
            source="policy_file",
        )

    def evaluate(self, workspace_id: str, role: str, target_module: str) -> PolicyDecision:
        policy = self.policy_for(workspace_id)
        reasons: list[str] = []

        # A disabled module is rejected outright and never queues an approval.
        if target_module not in policy.enabled_modules:
            reasons.append(f"Module '{target_module}' is not enabled for this workspace")
            return PolicyDecision(False, False, reasons, module_disabled=True)

        if policy.require_owner_approval and not has_required_role(role, OWNER):
            reasons.append("Workspace requires owner approval for execution")
            return PolicyDecision(False, True, reasons)

        return PolicyDecision(True, False, reasons)

    def record_pending_approval(self, draft: Draft, workspace_id: str, actor_id: str) -> str:
        """Insert the approval request once per draft id and return its id."""
        self._store.execute(
            """
            INSERT OR IGNORE INTO pending_approvals (
                id, draft_id, workspace_id, requested_by, draft_json, status, created_at
            ) VALUES (?, ?, ?, ?, ?, 'pending', ?)
            """,
            (
                str(uuid.uuid4()),
                draft.id,
                workspace_id,
                actor_id,
                dumps(draft.model_dump(mode="json")),
                self._clock(),
            ),
        )
        row = self._store.fetch_one(
            "SELECT id FROM pending_approvals WHERE draft_id = ?",
            (draft.id,),
        )
        if row is None:
            raise RuntimeError(f"Pending approval for draft {draft.id} was not stored")
        return str(row["id"])
