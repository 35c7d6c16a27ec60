"""Chat agent: posts an approved message into an existing thread."""

from __future__ import annotations

import logging
import sqlite3
import uuid

from draft_gateway.adapters.base import (
    DryRunResult,
    ExecuteResult,
    ExecutionContext,
    entity_ref,
    scope_preview,
)
from draft_gateway.domain.drafts import Draft
from draft_gateway.utils.time import utc_now_iso

logger = logging.getLogger(__name__)

_MAX_MESSAGE_LENGTH = 10_000


def _message_body(draft: Draft) -> str:
    payload = draft.payload
    for key in ("body", "content", "message"):
        value = payload.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


class ChatAdapter:
    name = "chat"
    handles = frozenset({"draft_message"})

    def dry_run(self, draft: Draft, ctx: ExecutionContext) -> DryRunResult:
        result = DryRunResult(can_execute=True, preview=scope_preview(draft))
        thread_id = draft.payload.get("thread_id")
        if not isinstance(thread_id, str) or not thread_id:
            result.block("draft_message requires payload.thread_id")
        elif not self._thread_exists(ctx, thread_id):
            result.block("Chat thread not found in this workspace")

        body = _message_body(draft)
        if not body:
            result.block("draft_message requires a non-empty message body")
        elif len(body) > _MAX_MESSAGE_LENGTH:
            result.block(f"Message exceeds {_MAX_MESSAGE_LENGTH} characters")
        return result

    def execute(self, draft: Draft, ctx: ExecutionContext) -> ExecuteResult:
        check = self.dry_run(draft, ctx)
        if not check.can_execute:
            return ExecuteResult.failed("; ".join(check.errors))
        if not ctx.meaning_object_id:
            return ExecuteResult.failed("Posting a message requires a meaning_object_id")

        message_id = str(uuid.uuid4())
        try:
            ctx.store.execute(
                """
                INSERT INTO chat_messages (
                    id, thread_id, workspace_id, sender_user_id, body,
                    meaning_object_id, source_lang, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    message_id,
                    draft.payload["thread_id"],
                    ctx.workspace_id,
                    ctx.actor_id,
                    _message_body(draft),
                    ctx.meaning_object_id,
                    ctx.source_lang,
                    utc_now_iso(),
                ),
            )
        except sqlite3.Error as exc:
            logger.warning("Chat execute failed for draft %s: %s", draft.id, exc)
            return ExecuteResult.failed(str(exc))
        return ExecuteResult(success=True, entities=[entity_ref("chat_message", message_id)])

    @staticmethod
    def _thread_exists(ctx: ExecutionContext, thread_id: str) -> bool:
        row = ctx.store.fetch_one(
            "SELECT 1 FROM chat_threads WHERE id = ? AND workspace_id = ?",
            (thread_id, ctx.workspace_id),
        )
        return row is not None
