from __future__ import annotations

import asyncio
import contextlib
import copy
from typing import Any, Callable

import pytest

from draft_gateway.config import (
    AuthSettings,
    MaintenanceSettings,
    Settings,
    SigningSettings,
)
from draft_gateway.gateway.service import DraftGateway
from draft_gateway.policy.models import PolicyConfig, PolicyDefaults
from draft_gateway.storage.db import SqliteStore

WORKSPACE = "ws-1"
OTHER_WORKSPACE = "ws-2"
MEMBER = "member-1"
OWNER = "owner-1"
PENDING = "pending-1"
OUTSIDER = "outsider-1"
THREAD = "thread-1"

SIGNING_SECRET = "test-signing-secret-0123456789"
MAINTENANCE_KEY = "maint-key-0123456789"
START_MS = 1_700_000_000_000


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


@pytest.fixture(autouse=True)
def _close_default_event_loop() -> None:
    yield
    policy = asyncio.get_event_loop_policy()
    local = getattr(policy, "_local", None)
    loop = getattr(local, "_loop", None) if local is not None else None
    if loop is not None and not loop.is_running() and not loop.is_closed():
        with contextlib.suppress(Exception):
            loop.close()
    if loop is not None:
        with contextlib.suppress(Exception):
            policy.set_event_loop(None)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path) -> SqliteStore:
    db = SqliteStore(str(tmp_path / "gateway.sqlite"))
    yield db
    db.close()


@pytest.fixture
def seeded_store(store: SqliteStore) -> SqliteStore:
    """Two workspaces, a member, a company owner, a pending invite and a chat thread."""
    store.execute(
        "INSERT INTO workspaces (id, company_id, name, default_locale) VALUES (?, ?, ?, ?)",
        (WORKSPACE, "co-1", "Launch", "en"),
    )
    store.execute(
        "INSERT INTO workspaces (id, company_id, name, default_locale) VALUES (?, ?, ?, ?)",
        (OTHER_WORKSPACE, "co-2", "Ops", "de"),
    )
    members = [
        (WORKSPACE, MEMBER, "engineer", "accepted"),
        (WORKSPACE, OWNER, "lead", "active"),
        (WORKSPACE, PENDING, None, "pending"),
        (OTHER_WORKSPACE, MEMBER, None, "accepted"),
    ]
    for row in members:
        store.execute(
            "INSERT INTO workspace_members (workspace_id, user_id, team_role, invite_status) "
            "VALUES (?, ?, ?, ?)",
            row,
        )
    store.execute(
        "INSERT INTO company_roles (user_id, company_id, role) VALUES (?, ?, ?)",
        (OWNER, "co-1", "owner"),
    )
    store.execute(
        "INSERT INTO chat_threads (id, workspace_id, title, created_at) VALUES (?, ?, ?, ?)",
        (THREAD, WORKSPACE, "general", "2024-01-01T00:00:00+00:00"),
    )
    return store


@pytest.fixture
def settings() -> Settings:
    return Settings(
        auth=AuthSettings(
            provider="static",
            static_tokens={"tok-member": MEMBER, "tok-owner": OWNER, "tok-outsider": OUTSIDER},
        ),
        signing=SigningSettings(secret=SIGNING_SECRET),
        maintenance=MaintenanceSettings(key=MAINTENANCE_KEY),
    )


@pytest.fixture
def policy_config() -> PolicyConfig:
    return PolicyConfig(
        defaults=PolicyDefaults(
            require_owner_approval=False,
            enabled_modules=["teamwork", "tasks", "goals", "plans", "ideas", "chat"],
        )
    )


@pytest.fixture
def gateway(seeded_store, settings, policy_config, clock) -> DraftGateway:
    return DraftGateway(
        store=seeded_store, settings=settings, policy_config=policy_config, clock=clock
    )


_TASK_DRAFT: dict[str, Any] = {
    "id": "draft-1",
    "type": "task",
    "title": "Write launch checklist",
    "description": "Cover QA sign-off and rollout steps",
    "target_module": "tasks",
    "agent_type": "teamwork",
    "payload": {"title": "Write launch checklist", "is_priority": True},
    "required_role": "member",
    "intent": "Track launch preparation",
    "scope": {
        "affected_modules": ["tasks"],
        "affected_entities": [{"entity_type": "task", "action": "create"}],
        "impact_summary": "Adds one task",
    },
    "risks": [],
    "rollback_possible": True,
    "meaning": {"meaning_payload": {"subject": "Launch checklist", "intent": "create"}},
}


@pytest.fixture
def make_draft() -> Callable[..., dict[str, Any]]:
    def _make(**overrides: Any) -> dict[str, Any]:
        draft = copy.deepcopy(_TASK_DRAFT)
        draft.update(overrides)
        return draft

    return _make


@pytest.fixture
def confirm_and_prepare(gateway):
    """Confirm a draft and return ``(confirm_body, execute_request_body)``."""

    def _run(
        draft: dict[str, Any],
        actor: str = MEMBER,
        workspace: str = WORKSPACE,
    ) -> tuple[dict[str, Any], dict[str, Any]]:
        confirmed = gateway.handle(
            {"mode": "confirm", "workspace_id": workspace, "draft": draft},
            actor,
            "req-confirm",
        )
        assert confirmed.status == 200, confirmed.body
        meaning_id = confirmed.body.get("meaning_object_id") or draft["meaning"].get(
            "meaning_object_id"
        )
        executable = copy.deepcopy(draft)
        executable["meaning"] = {"meaning_object_id": meaning_id}
        executable["expires_at"] = confirmed.body["expires_at"]
        execute_body = {
            "mode": "execute",
            "workspace_id": workspace,
            "draft": executable,
            "confirmation_hash": confirmed.body["confirmation_hash"],
        }
        return confirmed.body, execute_body

    return _run
