"""Agent adapter contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from draft_gateway.domain.drafts import Draft
from draft_gateway.storage.db import SqliteStore


@dataclass
class ExecutionContext:
    """What an adapter knows about the caller.

    ``store`` is the gateway's store handle; adapter writes made during
    ``execute`` run inside the caller's open transaction.
    """

    workspace_id: str
    actor_id: str
    role: str
    request_id: str
    store: SqliteStore
    source_lang: str = "en"
    meaning_object_id: str | None = None


@dataclass
class DryRunResult:
    can_execute: bool
    preview: dict[str, Any]
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)

    def block(self, message: str) -> None:
        self.errors.append(message)
        self.can_execute = False

    def as_dict(self) -> dict[str, Any]:
        return {
            "can_execute": self.can_execute,
            "preview": self.preview,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
        }


@dataclass
class ExecuteResult:
    success: bool
    entities: list[dict[str, str]] = field(default_factory=list)
    error: str | None = None

    @classmethod
    def failed(cls, error: str) -> "ExecuteResult":
        return cls(success=False, error=error)


class AgentAdapter(Protocol):
    """An executor for a family of draft types.

    Neither method raises for bad input: ``dry_run`` reports blocking
    problems in ``errors`` and ``execute`` returns a failed result.
    """

    name: str
    handles: frozenset[str]

    def dry_run(self, draft: Draft, ctx: ExecutionContext) -> DryRunResult: ...

    def execute(self, draft: Draft, ctx: ExecutionContext) -> ExecuteResult: ...


def scope_preview(draft: Draft) -> dict[str, Any]:
    """Preview block built from the draft's declared scope."""
    scope = draft.scope
    modules = list(scope.affected_modules) or [draft.target_module]
    return {
        "affected_modules": modules,
        "affected_entities": [
            entity.model_dump(exclude_none=True) for entity in scope.affected_entities
        ],
        "impact_summary": scope.impact_summary or draft.title,
    }


def entity_ref(entity_type: str, entity_id: str, action: str = "create") -> dict[str, str]:
    return {"type": entity_type, "id": entity_id, "action": action}
