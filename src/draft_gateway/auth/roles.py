"""Workspace role resolution over membership and company roles."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from draft_gateway.storage.db import SqliteStore

logger = logging.getLogger(__name__)

MEMBER = "member"
OWNER = "owner"

# "admin" is accepted on drafts for compatibility and ranks with owner.
_ROLE_RANK = {MEMBER: 1, "admin": 2, OWNER: 2}
_ACCEPTED_INVITE_STATUSES = frozenset({"active", "accepted"})
_ELEVATED_COMPANY_ROLES = frozenset({"owner", "admin"})


@dataclass(frozen=True)
class WorkspaceRole:
    """Effective role of an actor inside one workspace."""

    workspace_id: str
    user_id: str
    role: str
    company_id: str | None
    source_lang: str

    @property
    def elevated(self) -> bool:
        return self.role == OWNER


def has_required_role(have: str, need: str) -> bool:
    return _ROLE_RANK.get(have, 0) >= _ROLE_RANK.get(need, _ROLE_RANK[OWNER])


class RoleResolver:
    """
    Resolves ``(actor, workspace) -> role``.

    - No accepted membership means no role at all.
    - An owner/admin role on the workspace's owning company elevates to owner.
    - Everyone else with an accepted membership is a member.
    """

    def __init__(self, store: SqliteStore) -> None:
        self._store = store

    def resolve(self, actor_id: str, workspace_id: str) -> WorkspaceRole | None:
        row = self._store.fetch_one(
            """
            SELECT m.invite_status, w.company_id, w.default_locale
            FROM workspace_members AS m
            LEFT JOIN workspaces AS w ON w.id = m.workspace_id
            WHERE m.workspace_id = ? AND m.user_id = ?
            """,
            (workspace_id, actor_id),
        )
        if row is None:
            logger.info("No membership for user %s in workspace %s", actor_id, workspace_id)
            return None
        if str(row["invite_status"]).lower() not in _ACCEPTED_INVITE_STATUSES:
            logger.info(
                "Membership for user %s in workspace %s is %s",
                actor_id,
                workspace_id,
                row["invite_status"],
            )
            return None

        company_id = row["company_id"]
        role = MEMBER
        if company_id:
            placeholders = ",".join("?" for _ in _ELEVATED_COMPANY_ROLES)
            elevated = self._store.fetch_one(
                f"SELECT 1 FROM company_roles WHERE user_id = ? AND company_id = ? "
                f"AND role IN ({placeholders}) LIMIT 1",
                (actor_id, company_id, *sorted(_ELEVATED_COMPANY_ROLES)),
            )
            if elevated is not None:
                role = OWNER

        logger.debug("Role resolved for user %s in %s: %s", actor_id, workspace_id, role)
        return WorkspaceRole(
            workspace_id=workspace_id,
            user_id=actor_id,
            role=role,
            company_id=company_id,
            source_lang=row["default_locale"] or "en",
        )
