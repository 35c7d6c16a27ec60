from __future__ import annotations

import json

import pytest

from draft_gateway.domain.drafts import Draft
from draft_gateway.policy.engine import PolicyGate
from draft_gateway.policy.loader import load_policy
from draft_gateway.policy.models import PolicyConfig, PolicyDefaults, WorkspacePolicyOverride


@pytest.fixture
def config() -> PolicyConfig:
    return PolicyConfig(
        defaults=PolicyDefaults(enabled_modules=["tasks", "goals"]),
        workspaces={
            "ws-strict": WorkspacePolicyOverride(require_owner_approval=True),
            "ws-chat": WorkspacePolicyOverride(enabled_modules=["chat"]),
        },
    )


@pytest.fixture
def gate(store, config, clock) -> PolicyGate:
    return PolicyGate(store, config, clock=clock)


def _set_workspace_row(store, workspace: str, require: bool, modules: list[str]) -> None:
    store.execute(
        "INSERT INTO workspace_policies (workspace_id, require_owner_approval, enabled_modules) "
        "VALUES (?, ?, ?)",
        (workspace, int(require), json.dumps(modules)),
    )


class TestPolicyResolution:
    def test_defaults(self, gate: PolicyGate) -> None:
        policy = gate.policy_for("ws-any")
        assert policy.source == "defaults"
        assert not policy.require_owner_approval
        assert policy.enabled_modules == frozenset({"tasks", "goals"})

    def test_file_override_inherits_unset_fields(self, gate: PolicyGate) -> None:
        strict = gate.policy_for("ws-strict")
        assert strict.source == "policy_file"
        assert strict.require_owner_approval
        assert strict.enabled_modules == frozenset({"tasks", "goals"})

        chat = gate.policy_for("ws-chat")
        assert not chat.require_owner_approval
        assert chat.enabled_modules == frozenset({"chat"})

    def test_workspace_row_wins(self, gate: PolicyGate, store) -> None:
        _set_workspace_row(store, "ws-strict", False, ["ideas"])
        policy = gate.policy_for("ws-strict")
        assert policy.source == "workspace"
        assert not policy.require_owner_approval
        assert policy.enabled_modules == frozenset({"ideas"})

    def test_malformed_row_modules_disable_everything(self, gate: PolicyGate, store) -> None:
        store.execute(
            "INSERT INTO workspace_policies (workspace_id, enabled_modules) VALUES (?, ?)",
            ("ws-bad", '{"tasks": true}'),
        )
        assert gate.policy_for("ws-bad").enabled_modules == frozenset()


class TestEvaluate:
    def test_enabled_module_allowed(self, gate: PolicyGate) -> None:
        decision = gate.evaluate("ws-any", "member", "tasks")
        assert decision.allowed
        assert not decision.require_approval
        assert decision.reasons == []

    def test_allow_list_is_exact(self, gate: PolicyGate) -> None:
        decision = gate.evaluate("ws-any", "owner", "task")
        assert not decision.allowed
        assert decision.module_disabled
        assert "not enabled" in decision.reasons[0]

    def test_disabled_module_never_requires_approval(self, gate: PolicyGate) -> None:
        decision = gate.evaluate("ws-strict", "member", "chat")
        assert decision.module_disabled
        assert not decision.require_approval

    def test_member_needs_owner_approval(self, gate: PolicyGate) -> None:
        decision = gate.evaluate("ws-strict", "member", "tasks")
        assert not decision.allowed
        assert decision.require_approval
        assert not decision.module_disabled

    def test_owner_skips_approval(self, gate: PolicyGate) -> None:
        decision = gate.evaluate("ws-strict", "owner", "tasks")
        assert decision.allowed


def test_record_pending_approval_is_idempotent(gate: PolicyGate, store) -> None:
    draft = Draft.model_validate(
        {
            "id": "draft-9",
            "type": "task",
            "target_module": "tasks",
            "meaning": {"meaning_object_id": "m-1"},
        }
    )
    first = gate.record_pending_approval(draft, "ws-strict", "u1")
    second = gate.record_pending_approval(draft, "ws-strict", "u2")
    assert first == second
    row = store.fetch_one("SELECT * FROM pending_approvals WHERE id = ?", (first,))
    assert row["requested_by"] == "u1"
    assert row["status"] == "pending"
    assert json.loads(row["draft_json"])["id"] == "draft-9"


class TestLoader:
    def test_load_policy(self, tmp_path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text(
            "version: 1\n"
            "defaults:\n"
            "  require_owner_approval: false\n"
            "  enabled_modules: [tasks, chat]\n"
            "workspaces:\n"
            "  ws-empty:\n"
            "  ws-strict:\n"
            "    require_owner_approval: true\n",
            encoding="utf-8",
        )
        config = load_policy(str(path))
        assert config.defaults.enabled_modules == ["tasks", "chat"]
        assert config.workspaces["ws-empty"].require_owner_approval is None
        assert config.workspaces["ws-strict"].require_owner_approval is True

    def test_missing_file(self, tmp_path) -> None:
        with pytest.raises(FileNotFoundError):
            load_policy(str(tmp_path / "missing.yaml"))

    def test_non_mapping_rejected(self, tmp_path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text("- just\n- a list\n", encoding="utf-8")
        with pytest.raises(ValueError, match="mapping"):
            load_policy(str(path))

    def test_empty_file_uses_defaults(self, tmp_path) -> None:
        path = tmp_path / "policy.yaml"
        path.write_text("", encoding="utf-8")
        config = load_policy(str(path))
        assert config.defaults.enabled_modules == []
        assert config.workspaces == {}

    def test_repository_policy_file_loads(self) -> None:
        from pathlib import Path

        root = Path(__file__).resolve().parents[1]
        config = load_policy(str(root / "policy.yaml"))
        assert "tasks" in config.defaults.enabled_modules
