from __future__ import annotations

import copy
import json

import pytest

from draft_gateway.adapters import AdapterRegistry, ChatAdapter, DryRunResult, ExecuteResult
from draft_gateway.adapters.teamwork import insert_task
from draft_gateway.execution.meaning import MeaningBinder
from draft_gateway.execution.reservations import ReservationStore
from draft_gateway.gateway.service import DraftGateway

from .conftest import MEMBER, OTHER_WORKSPACE, OUTSIDER, OWNER, THREAD, WORKSPACE


def _dry_run(gateway, draft, actor=MEMBER, workspace=WORKSPACE):
    return gateway.handle(
        {"mode": "dry_run", "workspace_id": workspace, "draft": draft}, actor, "req-dry"
    )


def _audit_actions(store) -> list[str]:
    return [row["action"] for row in store.fetch_all("SELECT action FROM audit_logs")]


class TestDryRun:
    def test_preview_without_mutation(self, gateway, make_draft, seeded_store) -> None:
        result = _dry_run(gateway, make_draft())

        assert result.status == 200
        assert result.body["can_execute"] is True
        assert result.body["preview"]["impact_summary"] == "Adds one task"
        assert result.body["errors"] == []
        assert result.body["request_id"] == "req-dry"
        for table in ("tasks", "meaning_objects", "draft_confirmations", "executed_drafts"):
            assert seeded_store.count(table) == 0

    def test_non_member_denied(self, gateway, make_draft, seeded_store) -> None:
        result = _dry_run(gateway, make_draft(), actor=OUTSIDER)
        assert result.status == 403
        assert result.body["code"] == "EXECUTION_DENIED"
        assert result.body["suggested_action"] == "request elevated permission"
        row = seeded_store.fetch_one("SELECT * FROM audit_logs")
        assert row["action"] == "draft_dry_run_denied"
        assert row["actor_user_id"] == OUTSIDER
        assert row["entity_id"] == "draft-1"

    def test_non_finite_payload_rejected(self, gateway, make_draft) -> None:
        result = _dry_run(gateway, make_draft(payload={"title": "x", "estimate": float("nan")}))
        assert result.status == 400
        assert result.body["code"] == "VALIDATION_ERROR"

    def test_unknown_agent(self, gateway, make_draft) -> None:
        result = _dry_run(gateway, make_draft(agent_type="finance"))
        assert result.status == 400
        assert result.body["code"] == "AGENT_NOT_FOUND"

    def test_insufficient_role_blocks_preview(self, gateway, make_draft) -> None:
        result = _dry_run(gateway, make_draft(required_role="owner"))
        assert result.status == 200
        assert result.body["can_execute"] is False
        assert result.body["errors"] == ["Requires owner role, you have member"]


class TestConfirm:
    def test_mints_meaning_and_signs(self, gateway, make_draft, seeded_store, clock) -> None:
        result = gateway.handle(
            {"mode": "confirm", "workspace_id": WORKSPACE, "draft": make_draft()},
            MEMBER,
            "req-1",
        )

        assert result.status == 200
        body = result.body
        assert len(body["confirmation_hash"]) == 64
        assert body["expires_at"] == clock.now + 600_000
        meaning = seeded_store.fetch_one(
            "SELECT * FROM meaning_objects WHERE id = ?", (body["meaning_object_id"],)
        )
        assert meaning["draft_id"] == "draft-1"
        assert meaning["workspace_id"] == WORKSPACE
        document = json.loads(meaning["meaning_json"])
        assert document["version"] == "v1"
        assert document["subject"] == "Launch checklist"
        assert document["metadata"]["draft_id"] == "draft-1"
        assert _audit_actions(seeded_store) == ["draft_confirmed"]

    def test_confirm_is_idempotent(self, gateway, make_draft, seeded_store, clock) -> None:
        request = {"mode": "confirm", "workspace_id": WORKSPACE, "draft": make_draft()}
        first = gateway.handle(request, MEMBER, "req-1")
        clock.advance(30)
        second = gateway.handle(request, MEMBER, "req-2")

        assert second.status == 200
        assert second.body["meaning_object_id"] == first.body["meaning_object_id"]
        assert second.body["expires_at"] == first.body["expires_at"]
        assert second.body["confirmation_hash"] == first.body["confirmation_hash"]
        assert seeded_store.count("meaning_objects") == 1
        assert seeded_store.count("draft_confirmations") == 1
        assert _audit_actions(seeded_store) == ["draft_confirmed"]

    def test_reconfirm_with_changed_payload_is_tampering(self, gateway, make_draft) -> None:
        gateway.handle(
            {"mode": "confirm", "workspace_id": WORKSPACE, "draft": make_draft()}, MEMBER, "r1"
        )
        changed = make_draft(payload={"title": "Something else"})
        result = gateway.handle(
            {"mode": "confirm", "workspace_id": WORKSPACE, "draft": changed}, MEMBER, "r2"
        )
        assert result.status == 403
        assert "tampered" in result.body["reason"]

    def test_draft_id_is_bound_to_its_workspace(self, gateway, make_draft) -> None:
        gateway.handle(
            {"mode": "confirm", "workspace_id": WORKSPACE, "draft": make_draft()}, MEMBER, "r1"
        )
        result = gateway.handle(
            {"mode": "confirm", "workspace_id": OTHER_WORKSPACE, "draft": make_draft()},
            MEMBER,
            "r2",
        )
        assert result.status == 403

    def test_reference_to_existing_meaning(self, gateway, make_draft, seeded_store) -> None:
        meaning_id = MeaningBinder(seeded_store).mint(
            workspace_id=WORKSPACE,
            actor_id=MEMBER,
            meaning_type="task",
            document={"version": "v1"},
            source_lang="en",
            draft_id=None,
        )
        draft = make_draft(meaning={"meaning_object_id": meaning_id})
        result = gateway.handle(
            {"mode": "confirm", "workspace_id": WORKSPACE, "draft": draft}, MEMBER, "r1"
        )
        assert result.status == 200
        assert "meaning_object_id" not in result.body
        assert seeded_store.count("meaning_objects") == 1

    def test_reference_to_unknown_meaning(self, gateway, make_draft) -> None:
        draft = make_draft(meaning={"meaning_object_id": "missing"})
        result = gateway.handle(
            {"mode": "confirm", "workspace_id": WORKSPACE, "draft": draft}, MEMBER, "r1"
        )
        assert result.status == 400
        assert result.body["code"] == "VALIDATION_ERROR"

    def test_reference_to_meaning_of_another_draft(
        self, gateway, make_draft, confirm_and_prepare
    ) -> None:
        confirmed, _ = confirm_and_prepare(make_draft())
        other = make_draft(
            id="draft-2", meaning={"meaning_object_id": confirmed["meaning_object_id"]}
        )
        result = gateway.handle(
            {"mode": "confirm", "workspace_id": WORKSPACE, "draft": other}, MEMBER, "r2"
        )
        assert result.status == 400
        assert "different draft" in result.body["reason"]

    def test_non_member_denied_is_audited(self, gateway, make_draft, seeded_store) -> None:
        result = gateway.handle(
            {"mode": "confirm", "workspace_id": WORKSPACE, "draft": make_draft()}, OUTSIDER, "r1"
        )
        assert result.status == 403
        assert _audit_actions(seeded_store) == ["draft_confirm_denied"]
        assert seeded_store.count("meaning_objects") == 0

    def test_non_finite_payload_rejected(self, gateway, make_draft, seeded_store) -> None:
        draft = make_draft(payload={"title": "x", "estimate": float("inf")})
        result = gateway.handle(
            {"mode": "confirm", "workspace_id": WORKSPACE, "draft": draft}, MEMBER, "r1"
        )
        assert result.status == 400
        assert result.body["code"] == "VALIDATION_ERROR"
        assert seeded_store.count("meaning_objects") == 0
        assert seeded_store.count("draft_confirmations") == 0

    def test_non_finite_meaning_rejected(self, gateway, make_draft) -> None:
        draft = make_draft(meaning={"meaning_payload": {"subject": "x", "score": float("nan")}})
        result = gateway.handle(
            {"mode": "confirm", "workspace_id": WORKSPACE, "draft": draft}, MEMBER, "r1"
        )
        assert result.status == 400

    def test_reconfirm_after_expiry(self, gateway, make_draft, clock) -> None:
        request = {"mode": "confirm", "workspace_id": WORKSPACE, "draft": make_draft()}
        assert gateway.handle(request, MEMBER, "r1").status == 200
        clock.advance(601)

        result = gateway.handle(request, MEMBER, "r2")

        assert result.status == 410
        assert result.body["reason"] == "Confirmation expired, create a new draft"
        assert result.body["suggested_action"] == "regenerate proposal"

    def test_reconfirm_at_exact_expiry(self, gateway, make_draft, clock) -> None:
        request = {"mode": "confirm", "workspace_id": WORKSPACE, "draft": make_draft()}
        first = gateway.handle(request, MEMBER, "r1")
        clock.now = first.body["expires_at"]
        assert gateway.handle(request, MEMBER, "r2").status == 410

    def test_concurrent_confirm_replays_winner(
        self, gateway, make_draft, seeded_store, monkeypatch
    ) -> None:
        request = {"mode": "confirm", "workspace_id": WORKSPACE, "draft": make_draft()}
        winner = gateway.handle(request, MEMBER, "r1")

        # The loser read no confirmation and no meaning before the winner committed.
        confirmations = gateway.drafts._confirmations
        real_get = confirmations.get
        reads = []

        def stale_first_read(draft_id):
            reads.append(draft_id)
            return None if len(reads) == 1 else real_get(draft_id)

        monkeypatch.setattr(confirmations, "get", stale_first_read)
        monkeypatch.setattr(confirmations._binder, "find_for_draft", lambda draft_id: None)

        result = gateway.handle(request, MEMBER, "r2")

        assert result.status == 200
        assert result.body["meaning_object_id"] == winner.body["meaning_object_id"]
        assert result.body["expires_at"] == winner.body["expires_at"]
        assert len(reads) == 2
        assert seeded_store.count("meaning_objects") == 1
        assert seeded_store.count("draft_confirmations") == 1


class TestExecute:
    def test_executes_once(self, gateway, make_draft, confirm_and_prepare, seeded_store) -> None:
        confirmed, request = confirm_and_prepare(make_draft())

        result = gateway.handle(request, MEMBER, "req-exec")

        assert result.status == 200, result.body
        assert result.body["success"] is True
        assert result.body["replayed"] is False
        [entity] = result.body["entities"]
        assert entity["type"] == "task"
        task = seeded_store.fetch_one("SELECT * FROM tasks WHERE id = ?", (entity["id"],))
        assert task["meaning_object_id"] == confirmed["meaning_object_id"]
        assert task["is_priority"] == 1
        reservation = seeded_store.fetch_one(
            "SELECT * FROM executed_drafts WHERE draft_id = 'draft-1'"
        )
        assert reservation["status"] == "success"
        assert reservation["audit_log_id"] == result.body["audit_log_id"]
        assert "draft_execute_success" in _audit_actions(seeded_store)
        event = seeded_store.fetch_one("SELECT * FROM org_events")
        assert event["event_type"] == "draft_executed"
        assert event["meaning_object_id"] == confirmed["meaning_object_id"]

    def test_repeat_execute_replays(
        self, gateway, make_draft, confirm_and_prepare, seeded_store
    ) -> None:
        _, request = confirm_and_prepare(make_draft())
        first = gateway.handle(request, MEMBER, "req-a")
        second = gateway.handle(request, MEMBER, "req-b")

        assert second.status == 200
        assert second.body["replayed"] is True
        assert second.body["entities"] == first.body["entities"]
        assert second.body["audit_log_id"] == first.body["audit_log_id"]
        assert seeded_store.count("tasks") == 1

    def test_tampered_payload_rejected(
        self, gateway, make_draft, confirm_and_prepare, seeded_store
    ) -> None:
        _, request = confirm_and_prepare(make_draft())
        request["draft"]["payload"]["title"] = "Delete everything"

        result = gateway.handle(request, MEMBER, "req-exec")

        assert result.status == 403
        assert result.body["reason"] == "Hash mismatch, proposal tampered or user changed"
        assert seeded_store.count("tasks") == 0
        assert seeded_store.count("executed_drafts") == 0
        assert _audit_actions(seeded_store).count("draft_execute_denied") == 1

    def test_swapped_meaning_rejected(
        self, gateway, make_draft, confirm_and_prepare, seeded_store
    ) -> None:
        _, request = confirm_and_prepare(make_draft())
        other, _ = confirm_and_prepare(make_draft(id="draft-2"))
        request["draft"]["meaning"] = {"meaning_object_id": other["meaning_object_id"]}

        result = gateway.handle(request, MEMBER, "req-exec")

        assert result.status == 403
        assert "tampered" in result.body["reason"]
        assert seeded_store.count("tasks") == 0

    def test_other_actor_cannot_reuse_hash(self, gateway, make_draft, confirm_and_prepare) -> None:
        _, request = confirm_and_prepare(make_draft())
        result = gateway.handle(request, OWNER, "req-exec")
        assert result.status == 403
        assert result.body["reason"] == "Hash mismatch, proposal tampered or user changed"

    def test_inline_meaning_rejected(self, gateway, make_draft, confirm_and_prepare) -> None:
        draft = make_draft()
        _, request = confirm_and_prepare(draft)
        request["draft"]["meaning"] = draft["meaning"]
        result = gateway.handle(request, MEMBER, "req-exec")
        assert result.status == 400
        assert result.body["code"] == "VALIDATION_ERROR"

    def test_missing_confirmation_hash(self, gateway, make_draft, confirm_and_prepare) -> None:
        _, request = confirm_and_prepare(make_draft())
        del request["confirmation_hash"]
        result = gateway.handle(request, MEMBER, "req-exec")
        assert result.status == 400
        assert result.body["code"] == "VALIDATION_ERROR"

    def test_expired_confirmation(
        self, gateway, make_draft, confirm_and_prepare, clock, seeded_store
    ) -> None:
        _, request = confirm_and_prepare(make_draft())
        clock.advance(601)
        result = gateway.handle(request, MEMBER, "req-exec")
        assert result.status == 410
        assert result.body["code"] == "EXECUTION_DENIED"
        assert seeded_store.count("tasks") == 0

    def test_expires_at_is_exclusive(
        self, gateway, make_draft, confirm_and_prepare, clock, seeded_store
    ) -> None:
        confirmed, request = confirm_and_prepare(make_draft())
        clock.now = confirmed["expires_at"]
        result = gateway.handle(request, MEMBER, "req-exec")

        assert result.status == 410
        assert seeded_store.count("executed_drafts") == 0

    def test_expired_after_success_is_not_replayed(
        self, gateway, make_draft, confirm_and_prepare, clock, seeded_store
    ) -> None:
        confirmed, request = confirm_and_prepare(make_draft())
        assert gateway.handle(request, MEMBER, "req-a").status == 200
        clock.now = confirmed["expires_at"] + 1

        result = gateway.handle(request, MEMBER, "req-b")

        assert result.status == 410
        assert "replayed" not in result.body
        assert seeded_store.count("tasks") == 1

    def test_extended_expiry_is_tampering(self, gateway, make_draft, confirm_and_prepare) -> None:
        _, request = confirm_and_prepare(make_draft())
        request["draft"]["expires_at"] += 3_600_000
        result = gateway.handle(request, MEMBER, "req-exec")
        assert result.status == 403

    def test_required_role_enforced(self, gateway, make_draft, confirm_and_prepare) -> None:
        _, request = confirm_and_prepare(make_draft(required_role="owner"))
        result = gateway.handle(request, MEMBER, "req-exec")
        assert result.status == 403
        assert result.body["reason"] == "Requires owner role, you have member"
        assert result.body["suggested_action"] == "request elevated permission"

    def test_owner_can_execute_owner_draft(self, gateway, make_draft, confirm_and_prepare) -> None:
        _, request = confirm_and_prepare(make_draft(required_role="owner"), actor=OWNER)
        result = gateway.handle(request, OWNER, "req-exec")
        assert result.status == 200

    def test_non_member_denied(
        self, gateway, make_draft, confirm_and_prepare, seeded_store
    ) -> None:
        _, request = confirm_and_prepare(make_draft())
        result = gateway.handle(request, OUTSIDER, "req-exec")
        assert result.status == 403
        assert _audit_actions(seeded_store).count("draft_execute_denied") == 1

    def test_unconfirmed_draft_rejected(
        self, gateway, make_draft, confirm_and_prepare, seeded_store
    ) -> None:
        _, request = confirm_and_prepare(make_draft())
        seeded_store.execute("DELETE FROM draft_confirmations")
        result = gateway.handle(request, MEMBER, "req-exec")
        assert result.status == 403
        assert result.body["reason"] == "Draft has not been confirmed"

    def test_disabled_module_creates_no_reservation(
        self, gateway, make_draft, confirm_and_prepare, seeded_store
    ) -> None:
        seeded_store.execute(
            "INSERT INTO workspace_policies "
            "(workspace_id, require_owner_approval, enabled_modules) VALUES (?, 1, ?)",
            (WORKSPACE, json.dumps(["goals"])),
        )
        _, request = confirm_and_prepare(make_draft())

        result = gateway.handle(request, MEMBER, "req-exec")

        assert result.status == 403
        assert result.body["code"] == "MODULE_DISABLED"
        assert seeded_store.count("executed_drafts") == 0
        assert seeded_store.count("pending_approvals") == 0
        assert seeded_store.count("tasks") == 0

    def test_owner_approval_queues_request(
        self, gateway, make_draft, confirm_and_prepare, seeded_store
    ) -> None:
        seeded_store.execute(
            "INSERT INTO workspace_policies "
            "(workspace_id, require_owner_approval, enabled_modules) VALUES (?, 1, ?)",
            (WORKSPACE, json.dumps(["tasks"])),
        )
        _, request = confirm_and_prepare(make_draft())

        first = gateway.handle(request, MEMBER, "req-1")
        second = gateway.handle(request, MEMBER, "req-2")

        assert first.status == 202
        assert first.body["code"] == "PENDING_APPROVAL"
        assert first.body["suggested_action"] == "wait for owner approval"
        assert first.body["approval_id"] == second.body["approval_id"]
        assert seeded_store.count("pending_approvals") == 1
        assert seeded_store.count("executed_drafts") == 0
        assert seeded_store.count("tasks") == 0
        assert "draft_pending_approval" in _audit_actions(seeded_store)

    def test_in_progress_execution_conflicts(
        self, gateway, make_draft, confirm_and_prepare, seeded_store, clock
    ) -> None:
        _, request = confirm_and_prepare(make_draft())
        ReservationStore(seeded_store, clock=clock).reserve(
            draft_id="draft-1",
            workspace_id=WORKSPACE,
            agent_type="teamwork",
            draft_type="task",
            actor_id=MEMBER,
            request_id="other",
        )
        result = gateway.handle(request, MEMBER, "req-exec")
        assert result.status == 409
        assert result.body["code"] == "ALREADY_EXECUTED"
        assert seeded_store.count("tasks") == 0

    def test_stale_claim_is_recovered(
        self, gateway, make_draft, confirm_and_prepare, seeded_store, clock
    ) -> None:
        _, request = confirm_and_prepare(make_draft())
        ReservationStore(seeded_store, clock=clock).reserve(
            draft_id="draft-1",
            workspace_id=WORKSPACE,
            agent_type="teamwork",
            draft_type="task",
            actor_id=MEMBER,
            request_id="crashed",
        )
        clock.advance(599)
        assert gateway.handle(request, MEMBER, "req-1").status == 409

        # Push the old claim past the staleness window without expiring the draft.
        seeded_store.execute("UPDATE executed_drafts SET reserved_at = reserved_at - 10000")
        result = gateway.handle(request, MEMBER, "req-2")
        assert result.status == 200
        assert seeded_store.fetch_one("SELECT attempts FROM executed_drafts")["attempts"] == 2

    def test_adapter_failure_is_recorded_and_replayed(
        self, gateway, make_draft, confirm_and_prepare, seeded_store
    ) -> None:
        draft = make_draft(
            type="update",
            payload={"entity_type": "task", "entity_id": "missing", "updates": {"status": "done"}},
        )
        _, request = confirm_and_prepare(draft)

        first = gateway.handle(request, MEMBER, "req-1")
        second = gateway.handle(request, MEMBER, "req-2")

        assert first.status == 400
        assert first.body["code"] == "EXECUTION_FAILED"
        assert "not found" in first.body["reason"]
        assert second.status == 400
        assert second.body["replayed"] is True
        assert second.body["reason"] == first.body["reason"]
        row = seeded_store.fetch_one("SELECT * FROM executed_drafts")
        assert row["status"] == "failed"
        assert row["error_code"] == "EXECUTION_FAILED"
        assert "draft_execute_failure" in _audit_actions(seeded_store)

    def test_chat_message(self, gateway, make_draft, confirm_and_prepare, seeded_store) -> None:
        draft = make_draft(
            id="draft-chat",
            type="draft_message",
            agent_type=None,
            target_module="chat",
            payload={"thread_id": THREAD, "body": "Release is green"},
        )
        _, request = confirm_and_prepare(draft)
        result = gateway.handle(request, MEMBER, "req-exec")
        assert result.status == 200
        assert result.body["entities"][0]["type"] == "chat_message"
        assert seeded_store.count("chat_messages") == 1


class _PartialWriteAdapter:
    """Writes a row, then reports failure."""

    name = "teamwork"
    handles = frozenset({"task"})

    def dry_run(self, draft, ctx):
        return DryRunResult(can_execute=True, preview={})

    def execute(self, draft, ctx):
        insert_task(ctx, "half done", {})
        return ExecuteResult.failed("downstream write failed")


class _ExplodingAdapter(_PartialWriteAdapter):
    def execute(self, draft, ctx):
        insert_task(ctx, "half done", {})
        raise RuntimeError("adapter bug")


@pytest.fixture
def gateway_with(seeded_store, settings, policy_config, clock):
    def _build(adapter) -> DraftGateway:
        return DraftGateway(
            store=seeded_store,
            settings=settings,
            policy_config=policy_config,
            registry=AdapterRegistry([adapter, ChatAdapter()]),
            clock=clock,
        )

    return _build


def _prepare(gw: DraftGateway, draft) -> dict:
    confirmed = gw.handle(
        {"mode": "confirm", "workspace_id": WORKSPACE, "draft": draft}, MEMBER, "req-c"
    )
    executable = copy.deepcopy(draft)
    executable["meaning"] = {"meaning_object_id": confirmed.body["meaning_object_id"]}
    executable["expires_at"] = confirmed.body["expires_at"]
    return {
        "mode": "execute",
        "workspace_id": WORKSPACE,
        "draft": executable,
        "confirmation_hash": confirmed.body["confirmation_hash"],
    }


class TestAtomicity:
    def test_failed_adapter_writes_are_rolled_back(
        self, gateway_with, make_draft, seeded_store
    ) -> None:
        gw = gateway_with(_PartialWriteAdapter())
        result = gw.handle(_prepare(gw, make_draft()), MEMBER, "req-exec")

        assert result.status == 400
        assert result.body["reason"] == "downstream write failed"
        assert seeded_store.count("tasks") == 0
        assert seeded_store.fetch_one("SELECT status FROM executed_drafts")["status"] == "failed"

    def test_adapter_exception_is_internal_error(
        self, gateway_with, make_draft, seeded_store
    ) -> None:
        gw = gateway_with(_ExplodingAdapter())
        request = _prepare(gw, make_draft())

        result = gw.handle(request, MEMBER, "req-exec")
        replay = gw.handle(request, MEMBER, "req-again")

        assert result.status == 500
        assert result.body["code"] == "INTERNAL_ERROR"
        assert "adapter bug" not in json.dumps(result.body)
        assert seeded_store.count("tasks") == 0
        assert replay.status == 500
        assert replay.body["replayed"] is True
        assert replay.body["code"] == "INTERNAL_ERROR"
