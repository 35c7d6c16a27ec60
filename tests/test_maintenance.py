from __future__ import annotations

import sqlite3

import pytest

from draft_gateway.config import ExecutionSettings, MaintenanceSettings, ServerSettings
from draft_gateway.execution.reservations import ReservationStore
from draft_gateway.gateway.maintenance import MaintenanceRunner

from .conftest import MAINTENANCE_KEY, MEMBER, WORKSPACE


def _runner(store, clock, *, app_env="dev", allowed_ips=()) -> MaintenanceRunner:
    return MaintenanceRunner(
        store,
        MaintenanceSettings(key=MAINTENANCE_KEY, allowed_ips=allowed_ips),
        ExecutionSettings(),
        ServerSettings(app_env=app_env),
        clock=clock,
    )


class TestAuthorize:
    def test_valid_key(self, store, clock) -> None:
        runner = _runner(store, clock)
        assert (
            runner.authorize(
                provided_key=MAINTENANCE_KEY, client_ip="10.0.0.1", method="POST", query_string=""
            )
            is None
        )

    @pytest.mark.parametrize("key", [None, "", "wrong-key", MAINTENANCE_KEY + "x"])
    def test_bad_key(self, store, clock, key) -> None:
        error = _runner(store, clock).authorize(
            provided_key=key, client_ip="10.0.0.1", method="POST", query_string=""
        )
        assert error.status == 401
        assert error.code == "UNAUTHORIZED"
        assert error.as_dict()["ok"] is False

    def test_unconfigured_key_rejects_everything(self, store, clock) -> None:
        runner = MaintenanceRunner(
            store, MaintenanceSettings(key=None), ExecutionSettings(), ServerSettings(), clock=clock
        )
        error = runner.authorize(provided_key="", client_ip=None, method="POST", query_string="")
        assert error.status == 401

    def test_ip_allowlist_checked_before_key(self, store, clock) -> None:
        runner = _runner(store, clock, allowed_ips=("10.0.0.5",))
        error = runner.authorize(
            provided_key=None, client_ip="10.0.0.1", method="POST", query_string=""
        )
        assert error.status == 403
        assert error.code == "FORBIDDEN"
        assert (
            runner.authorize(
                provided_key=MAINTENANCE_KEY, client_ip="10.0.0.5", method="POST", query_string=""
            )
            is None
        )

    def test_prod_requires_post(self, store, clock) -> None:
        error = _runner(store, clock, app_env="prod").authorize(
            provided_key=MAINTENANCE_KEY, client_ip="10.0.0.1", method="GET", query_string=""
        )
        assert error.status == 405
        assert error.code == "METHOD_NOT_ALLOWED"

    def test_prod_rejects_query_string(self, store, clock) -> None:
        error = _runner(store, clock, app_env="prod").authorize(
            provided_key=MAINTENANCE_KEY, client_ip="10.0.0.1", method="POST", query_string="x=1"
        )
        assert error.status == 400
        assert error.code == "BAD_REQUEST"

    def test_dev_allows_get(self, store, clock) -> None:
        assert (
            _runner(store, clock).authorize(
                provided_key=MAINTENANCE_KEY, client_ip="10.0.0.1", method="GET", query_string=""
            )
            is None
        )


class TestRun:
    def test_cleans_aged_rows(self, gateway, make_draft, seeded_store, clock) -> None:
        gateway.handle(
            {"mode": "confirm", "workspace_id": WORKSPACE, "draft": make_draft()},
            MEMBER,
            "client-req",
            replayable=True,
        )
        ReservationStore(seeded_store, clock=clock).reserve(
            draft_id="crashed-draft",
            workspace_id=WORKSPACE,
            agent_type="teamwork",
            draft_type="task",
            actor_id=MEMBER,
            request_id=None,
        )
        seeded_store.execute(
            "INSERT INTO pending_approvals "
            "(id, draft_id, workspace_id, requested_by, draft_json, created_at) "
            "VALUES ('pa-1', 'draft-9', ?, ?, '{}', ?)",
            (WORKSPACE, MEMBER, clock.now),
        )
        clock.advance(8 * 24 * 3600)

        result = gateway.maintenance.run("req-maint")

        assert result.status == 200
        assert result.body["ok"] is True
        assert result.body["confirmations_deleted"] == 1
        assert result.body["stale_reservations_deleted"] == 1
        assert result.body["dedupes_deleted"] == 1
        assert result.body["rate_limits_deleted"] == 1
        assert result.body["pending_approvals_deleted"] == 1
        assert result.body["request_id"] == "req-maint"
        assert isinstance(result.body["runtime_ms"], int)
        # Meaning records and finished work are kept.
        assert seeded_store.count("meaning_objects") == 1

    def test_fresh_rows_survive(self, gateway, make_draft, seeded_store) -> None:
        gateway.handle(
            {"mode": "confirm", "workspace_id": WORKSPACE, "draft": make_draft()},
            MEMBER,
            "client-req",
            replayable=True,
        )
        result = gateway.maintenance.run("req-maint")
        assert result.body["confirmations_deleted"] == 0
        assert result.body["dedupes_deleted"] == 0
        assert seeded_store.count("draft_confirmations") == 1

    def test_failing_step_does_not_stop_others(self, store, clock, monkeypatch) -> None:
        def _broken(cutoff: int) -> int:
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(store, "delete_request_dedupes", _broken)
        result = _runner(store, clock).run("req-maint")

        assert result.status == 200
        assert result.body["dedupes_deleted"] == 0
        assert result.body["rate_limits_deleted"] == 0
        assert result.body["pending_approvals_deleted"] == 0
