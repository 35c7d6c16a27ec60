"""Teamwork agent: tasks, goals, plans and ideas."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from typing import Any

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

# Fields an update may touch, per table.
UPDATE_FIELDS: dict[str, frozenset[str]] = {
    "tasks": frozenset(
        {
            "title",
            "description",
            "status",
            "due_date",
            "is_priority",
            "assigned_to",
            "blocked_reason",
        }
    ),
    "goals": frozenset({"title", "description", "status", "due_date", "kpi_current"}),
    "plans": frozenset({"title", "description"}),
    "ideas": frozenset({"title", "description", "status"}),
}
_TABLE_ALIASES = {"task": "tasks", "goal": "goals", "plan": "plans", "idea": "ideas"}
_MAX_TASKS_PER_SET = 50
_SCALARS = (str, int, float, bool, type(None))


def _text(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def table_for(entity_type: Any) -> str | None:
    if not isinstance(entity_type, str):
        return None
    name = entity_type.strip().lower()
    name = _TABLE_ALIASES.get(name, name)
    return name if name in UPDATE_FIELDS else None


def _insert(ctx: ExecutionContext, table: str, values: dict[str, Any]) -> str:
    if not ctx.meaning_object_id:
        raise ValueError(f"Insert into {table} requires a meaning_object_id")
    entity_id = str(uuid.uuid4())
    row = {
        "id": entity_id,
        "workspace_id": ctx.workspace_id,
        "created_by": ctx.actor_id,
        **values,
        "meaning_object_id": ctx.meaning_object_id,
        "source_lang": ctx.source_lang,
        "created_at": utc_now_iso(),
    }
    columns = ", ".join(row)
    placeholders = ", ".join("?" for _ in row)
    ctx.store.execute(
        f"INSERT INTO {table} ({columns}) VALUES ({placeholders})",
        tuple(row.values()),
    )
    return entity_id


def insert_task(ctx: ExecutionContext, title: str, fields: dict[str, Any]) -> str:
    return _insert(
        ctx,
        "tasks",
        {
            "title": title,
            "description": _text(fields.get("description")),
            "status": _text(fields.get("status")) or "backlog",
            "due_date": _text(fields.get("due_date")),
            "is_priority": 1 if fields.get("is_priority") else 0,
            "assigned_to": _text(fields.get("assigned_to")),
            "goal_id": _text(fields.get("goal_id")),
        },
    )


def insert_goal(ctx: ExecutionContext, title: str, fields: dict[str, Any]) -> str:
    kpi_target = fields.get("kpi_target")
    return _insert(
        ctx,
        "goals",
        {
            "title": title,
            "description": _text(fields.get("description")),
            "status": "active",
            "due_date": _text(fields.get("due_date")),
            "kpi_name": _text(fields.get("kpi_name")),
            "kpi_target": kpi_target if isinstance(kpi_target, (int, float)) else None,
        },
    )


def insert_plan(ctx: ExecutionContext, title: str, fields: dict[str, Any]) -> str:
    return _insert(
        ctx,
        "plans",
        {
            "title": title,
            "description": _text(fields.get("description")),
            "plan_type": _text(fields.get("plan_type")) or "custom",
            "ai_generated": 1,
        },
    )


def insert_idea(ctx: ExecutionContext, title: str, fields: dict[str, Any]) -> str:
    return _insert(
        ctx,
        "ideas",
        {
            "title": title,
            "description": _text(fields.get("description")),
            "source": "brain",
        },
    )


def check_update(payload: dict[str, Any]) -> tuple[str | None, dict[str, Any], list[str]]:
    """Validate an update payload.

    Returns ``(table, allowed_updates, problems)``; fields outside the table's
    whitelist are dropped from ``allowed_updates``.
    """
    problems: list[str] = []
    table = table_for(payload.get("entity_type"))
    entity_id = _text(payload.get("entity_id"))
    updates = payload.get("updates")
    if table is None or entity_id is None or not isinstance(updates, dict):
        problems.append("Update requires entity_type, entity_id, and updates")
        return None, {}, problems

    allowed = {k: v for k, v in updates.items() if k in UPDATE_FIELDS[table]}
    if not allowed:
        problems.append("No valid fields to update")
    non_scalar = sorted(k for k, v in allowed.items() if not isinstance(v, _SCALARS))
    if non_scalar:
        problems.append(f"Update values must be scalars: {', '.join(non_scalar)}")
    return table, allowed, problems


def apply_update(
    ctx: ExecutionContext,
    table: str,
    entity_id: str,
    updates: dict[str, Any],
) -> int:
    values = {k: (int(v) if isinstance(v, bool) else v) for k, v in updates.items()}
    assignments = ", ".join(f"{column} = ?" for column in values)
    return ctx.store.execute(
        f"UPDATE {table} SET {assignments}, updated_at = ? WHERE id = ? AND workspace_id = ?",
        (*values.values(), utc_now_iso(), entity_id, ctx.workspace_id),
    )


def entity_exists(ctx: ExecutionContext, table: str, entity_id: str) -> bool:
    row = ctx.store.fetch_one(
        f"SELECT 1 FROM {table} WHERE id = ? AND workspace_id = ?",
        (entity_id, ctx.workspace_id),
    )
    return row is not None


_CREATORS = {
    "task": ("task", insert_task),
    "goal": ("goal", insert_goal),
    "plan": ("plan", insert_plan),
    "draft_plan": ("plan", insert_plan),
    "idea": ("idea", insert_idea),
}


class TeamworkAdapter:
    name = "teamwork"
    handles = frozenset(
        {"task", "draft_task_set", "goal", "plan", "draft_plan", "idea", "update"}
    )

    def dry_run(self, draft: Draft, ctx: ExecutionContext) -> DryRunResult:
        result = DryRunResult(can_execute=True, preview=scope_preview(draft))
        payload = draft.payload

        if draft.type == "draft_task_set":
            tasks = payload.get("tasks")
            if not isinstance(tasks, list) or not tasks:
                result.block("draft_task_set requires a non-empty payload.tasks list")
            elif len(tasks) > _MAX_TASKS_PER_SET:
                result.block(f"draft_task_set supports at most {_MAX_TASKS_PER_SET} tasks")
            else:
                for index, task in enumerate(tasks):
                    if not isinstance(task, dict) or not _text(task.get("title")):
                        result.block(f"payload.tasks[{index}] requires a title")
        elif draft.type == "update":
            table, allowed, problems = check_update(payload)
            for problem in problems:
                result.block(problem)
            if table is not None:
                dropped = sorted(set(payload["updates"]) - set(allowed))
                if dropped:
                    result.warnings.append(
                        f"Ignoring fields not updatable on {table}: {', '.join(dropped)}"
                    )
                if not problems and not entity_exists(ctx, table, str(payload["entity_id"])):
                    result.block(f"{table} entity not found in this workspace")
        elif not self._title(draft):
            result.block(f"{draft.type} requires a title")

        if not draft.rollback_possible:
            result.warnings.append("This change cannot be rolled back")
        return result

    def execute(self, draft: Draft, ctx: ExecutionContext) -> ExecuteResult:
        check = self.dry_run(draft, ctx)
        if not check.can_execute:
            return ExecuteResult.failed("; ".join(check.errors))

        try:
            if draft.type == "update":
                return self._update(draft, ctx)
            if draft.type == "draft_task_set":
                entities = [
                    entity_ref("task", insert_task(ctx, str(_text(task["title"])), task))
                    for task in draft.payload["tasks"]
                ]
                return ExecuteResult(success=True, entities=entities)

            entity_type, create = _CREATORS[draft.type]
            fields = dict(draft.payload)
            fields.setdefault("description", draft.description)
            entity_id = create(ctx, self._title(draft) or "", fields)
            return ExecuteResult(success=True, entities=[entity_ref(entity_type, entity_id)])
        except (sqlite3.Error, ValueError) as exc:
            logger.warning("Teamwork execute failed for draft %s: %s", draft.id, exc)
            return ExecuteResult.failed(str(exc))

    @staticmethod
    def _title(draft: Draft) -> str | None:
        return _text(draft.payload.get("title")) or _text(draft.title)

    @staticmethod
    def _update(draft: Draft, ctx: ExecutionContext) -> ExecuteResult:
        table, allowed, _ = check_update(draft.payload)
        entity_id = str(draft.payload["entity_id"])
        if table is None or apply_update(ctx, table, entity_id, allowed) != 1:
            return ExecuteResult.failed("Entity to update was not found in this workspace")
        return ExecuteResult(success=True, entities=[entity_ref(table, entity_id, "update")])
