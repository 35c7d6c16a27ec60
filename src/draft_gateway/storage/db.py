"""SQLite access layer for drafts, reservations, audit rows and target tables."""

from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Mapping, Sequence

_SqlValue = str | bytes | int | float | None
_SqlParams = Sequence[_SqlValue] | Mapping[str, _SqlValue]

_BUSY_TIMEOUT_MS = 5000


class Transaction:
    """Handle yielded by ``SqliteStore.atomic``.

    Calling ``abort`` makes the block roll back on exit without raising.
    """

    def __init__(self) -> None:
        self._aborted = False

    def abort(self) -> None:
        self._aborted = True

    @property
    def aborted(self) -> bool:
        return self._aborted


class SqliteStore:
    def __init__(self, path: str, wal: bool = True) -> None:
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        # Autocommit mode: transactions are opened explicitly by ``atomic``.
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._closed = False
        self._tx_depth = 0
        if wal and path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.execute(f"PRAGMA busy_timeout={_BUSY_TIMEOUT_MS}")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS workspaces (
                id TEXT PRIMARY KEY,
                company_id TEXT,
                name TEXT NOT NULL DEFAULT '',
                default_locale TEXT NOT NULL DEFAULT 'en'
            );

            CREATE TABLE IF NOT EXISTS workspace_members (
                workspace_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                team_role TEXT,
                invite_status TEXT NOT NULL DEFAULT 'pending',
                PRIMARY KEY (workspace_id, user_id)
            );

            CREATE TABLE IF NOT EXISTS company_roles (
                user_id TEXT NOT NULL,
                company_id TEXT NOT NULL,
                role TEXT NOT NULL,
                PRIMARY KEY (user_id, company_id, role)
            );

            CREATE TABLE IF NOT EXISTS workspace_policies (
                workspace_id TEXT PRIMARY KEY,
                require_owner_approval INTEGER NOT NULL DEFAULT 0,
                enabled_modules TEXT NOT NULL DEFAULT '[]',
                updated_at TEXT
            );

            CREATE TABLE IF NOT EXISTS meaning_objects (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                created_by TEXT NOT NULL,
                type TEXT NOT NULL,
                source_lang TEXT NOT NULL DEFAULT 'en',
                meaning_json TEXT NOT NULL,
                draft_id TEXT UNIQUE,
                created_at TEXT NOT NULL,
                deleted_at TEXT
            );

            CREATE TABLE IF NOT EXISTS draft_confirmations (
                draft_id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                meaning_object_id TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                expires_at INTEGER NOT NULL,
                payload_hash TEXT NOT NULL,
                created_at TEXT NOT NULL,
                FOREIGN KEY(meaning_object_id) REFERENCES meaning_objects(id)
            );

            CREATE TABLE IF NOT EXISTS executed_drafts (
                draft_id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                agent_type TEXT NOT NULL,
                draft_type TEXT NOT NULL,
                actor_id TEXT NOT NULL,
                request_id TEXT,
                status TEXT NOT NULL CHECK (status IN ('reserved', 'success', 'failed')),
                claim_token TEXT NOT NULL,
                entities_json TEXT,
                result_json TEXT,
                audit_log_id TEXT,
                error TEXT,
                error_code TEXT,
                http_status INTEGER,
                attempts INTEGER NOT NULL DEFAULT 1,
                reserved_at INTEGER NOT NULL,
                finalized_at INTEGER
            );

            CREATE TABLE IF NOT EXISTS request_dedupes (
                actor_id TEXT NOT NULL,
                request_id TEXT NOT NULL,
                mode TEXT NOT NULL,
                workspace_id TEXT,
                status_code INTEGER NOT NULL,
                response_json TEXT NOT NULL,
                created_at INTEGER NOT NULL,
                PRIMARY KEY (actor_id, request_id)
            );

            CREATE TABLE IF NOT EXISTS rate_limit_hits (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                bucket_key TEXT NOT NULL,
                hit_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS pending_approvals (
                id TEXT PRIMARY KEY,
                draft_id TEXT NOT NULL UNIQUE,
                workspace_id TEXT NOT NULL,
                requested_by TEXT NOT NULL,
                draft_json TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                created_at INTEGER NOT NULL
            );

            CREATE TABLE IF NOT EXISTS audit_logs (
                id TEXT PRIMARY KEY,
                workspace_id TEXT,
                actor_user_id TEXT,
                action TEXT NOT NULL,
                entity_type TEXT,
                entity_id TEXT,
                metadata TEXT,
                ip_address TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS org_events (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                event_type TEXT NOT NULL,
                object_type TEXT,
                meaning_object_id TEXT,
                severity_hint TEXT NOT NULL DEFAULT 'info',
                metadata TEXT,
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS tasks (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                created_by TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'backlog',
                due_date TEXT,
                is_priority INTEGER NOT NULL DEFAULT 0,
                assigned_to TEXT,
                blocked_reason TEXT,
                goal_id TEXT,
                meaning_object_id TEXT NOT NULL,
                source_lang TEXT NOT NULL DEFAULT 'en',
                created_at TEXT NOT NULL,
                updated_at TEXT,
                FOREIGN KEY(meaning_object_id) REFERENCES meaning_objects(id)
            );

            CREATE TABLE IF NOT EXISTS goals (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                created_by TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'active',
                due_date TEXT,
                kpi_name TEXT,
                kpi_target REAL,
                kpi_current REAL,
                meaning_object_id TEXT NOT NULL,
                source_lang TEXT NOT NULL DEFAULT 'en',
                created_at TEXT NOT NULL,
                updated_at TEXT,
                FOREIGN KEY(meaning_object_id) REFERENCES meaning_objects(id)
            );

            CREATE TABLE IF NOT EXISTS plans (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                created_by TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                plan_type TEXT NOT NULL DEFAULT 'custom',
                ai_generated INTEGER NOT NULL DEFAULT 1,
                meaning_object_id TEXT NOT NULL,
                source_lang TEXT NOT NULL DEFAULT 'en',
                created_at TEXT NOT NULL,
                updated_at TEXT,
                FOREIGN KEY(meaning_object_id) REFERENCES meaning_objects(id)
            );

            CREATE TABLE IF NOT EXISTS ideas (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                created_by TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                status TEXT NOT NULL DEFAULT 'new',
                source TEXT NOT NULL DEFAULT 'brain',
                meaning_object_id TEXT NOT NULL,
                source_lang TEXT NOT NULL DEFAULT 'en',
                created_at TEXT NOT NULL,
                updated_at TEXT,
                FOREIGN KEY(meaning_object_id) REFERENCES meaning_objects(id)
            );

            CREATE TABLE IF NOT EXISTS chat_threads (
                id TEXT PRIMARY KEY,
                workspace_id TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT '',
                created_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS chat_messages (
                id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL,
                workspace_id TEXT NOT NULL,
                sender_user_id TEXT NOT NULL,
                body TEXT NOT NULL,
                meaning_object_id TEXT NOT NULL,
                source_lang TEXT NOT NULL DEFAULT 'en',
                created_at TEXT NOT NULL,
                FOREIGN KEY(thread_id) REFERENCES chat_threads(id),
                FOREIGN KEY(meaning_object_id) REFERENCES meaning_objects(id)
            );

            CREATE INDEX IF NOT EXISTS idx_members_user ON workspace_members(user_id);
            CREATE INDEX IF NOT EXISTS idx_meaning_workspace ON meaning_objects(workspace_id);
            CREATE INDEX IF NOT EXISTS idx_confirmations_expires_at
                ON draft_confirmations(expires_at);
            CREATE INDEX IF NOT EXISTS idx_executed_status_reserved_at
                ON executed_drafts(status, reserved_at);
            CREATE INDEX IF NOT EXISTS idx_dedupes_created_at ON request_dedupes(created_at);
            CREATE INDEX IF NOT EXISTS idx_rate_limit_bucket
                ON rate_limit_hits(bucket_key, hit_at);
            CREATE INDEX IF NOT EXISTS idx_pending_status_created
                ON pending_approvals(status, created_at);
            CREATE INDEX IF NOT EXISTS idx_audit_workspace ON audit_logs(workspace_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_events_workspace ON org_events(workspace_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_tasks_workspace ON tasks(workspace_id);
            CREATE INDEX IF NOT EXISTS idx_messages_thread ON chat_messages(thread_id);
            """
        )

    def execute(
        self,
        query: str,
        params: _SqlParams = (),
    ) -> int:
        """Run a single statement and return the affected row count."""
        with self._lock:
            cursor = self._conn.execute(query, params)
            return cursor.rowcount

    def fetch_one(
        self,
        query: str,
        params: _SqlParams = (),
    ) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchone()

    def fetch_all(
        self,
        query: str,
        params: _SqlParams = (),
    ) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.execute(query, params)
            return cur.fetchall()

    def count(self, table: str, where: str = "1=1", params: _SqlParams = ()) -> int:
        row = self.fetch_one(f"SELECT COUNT(*) AS n FROM {table} WHERE {where}", params)
        return int(row["n"]) if row is not None else 0

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._conn.close()
            self._closed = True

    @contextmanager
    def atomic(self) -> Iterator[Transaction]:
        """All-or-nothing block.

        The outermost block opens ``BEGIN IMMEDIATE`` so concurrent writers
        serialise on the database lock. Nested blocks become savepoints, which
        lets a best-effort write fail without discarding the enclosing work.
        The block rolls back when it raises or when ``Transaction.abort`` was
        called.
        """
        with self._lock:
            savepoint: str | None = None
            if self._tx_depth > 0:
                savepoint = f"sp_{self._tx_depth}"
                self._conn.execute(f"SAVEPOINT {savepoint}")
            else:
                self._conn.execute("BEGIN IMMEDIATE")
            self._tx_depth += 1
            tx = Transaction()
            try:
                yield tx
            except BaseException:
                self._tx_depth -= 1
                self._rollback(savepoint)
                raise
            self._tx_depth -= 1
            if tx.aborted:
                self._rollback(savepoint)
            elif savepoint is not None:
                self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
            else:
                self._conn.execute("COMMIT")

    def _rollback(self, savepoint: str | None) -> None:
        if savepoint is not None:
            self._conn.execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
            self._conn.execute(f"RELEASE SAVEPOINT {savepoint}")
        else:
            self._conn.execute("ROLLBACK")

    # Maintenance deletes. Each returns the number of rows removed.

    def delete_expired_confirmations(self, now_ms: int) -> int:
        return self.execute(
            "DELETE FROM draft_confirmations WHERE expires_at < ?",
            (now_ms,),
        )

    def delete_stale_reservations(self, cutoff_ms: int) -> int:
        return self.execute(
            "DELETE FROM executed_drafts WHERE status = 'reserved' AND reserved_at < ?",
            (cutoff_ms,),
        )

    def delete_request_dedupes(self, cutoff_ms: int) -> int:
        return self.execute(
            "DELETE FROM request_dedupes WHERE created_at < ?",
            (cutoff_ms,),
        )

    def delete_rate_limit_hits(self, cutoff_ms: int) -> int:
        return self.execute(
            "DELETE FROM rate_limit_hits WHERE hit_at < ?",
            (cutoff_ms,),
        )

    def delete_pending_approvals(self, cutoff_ms: int) -> int:
        return self.execute(
            "DELETE FROM pending_approvals WHERE status = 'pending' AND created_at < ?",
            (cutoff_ms,),
        )
