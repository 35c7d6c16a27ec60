"""Static agent adapter registry."""

from __future__ import annotations

from typing import Iterable

from draft_gateway.adapters.base import AgentAdapter
from draft_gateway.domain.drafts import Draft
from draft_gateway.errors import ACTION_REGENERATE, AGENT_NOT_FOUND, GatewayError, gateway_error

# Draft types that predate ``agent_type`` and the adapter that serves them.
LEGACY_TYPE_MAP: dict[str, str] = {
    "task": "teamwork",
    "draft_task_set": "teamwork",
    "goal": "teamwork",
    "plan": "teamwork",
    "draft_plan": "teamwork",
    "idea": "teamwork",
    "update": "teamwork",
    "draft_message": "chat",
}


class AdapterRegistry:
    def __init__(self, adapters: Iterable[AgentAdapter]) -> None:
        self._adapters: dict[str, AgentAdapter] = {}
        for adapter in adapters:
            if adapter.name in self._adapters:
                raise ValueError(f"Duplicate adapter name: {adapter.name}")
            self._adapters[adapter.name] = adapter

    def names(self) -> list[str]:
        return sorted(self._adapters)

    def get(self, name: str) -> AgentAdapter | None:
        return self._adapters.get(name)

    def resolve(self, draft: Draft) -> AgentAdapter | GatewayError:
        """``agent_type`` wins; otherwise fall back to the legacy type table."""
        name = draft.agent_type or LEGACY_TYPE_MAP.get(draft.type)
        if name is None:
            return gateway_error(
                AGENT_NOT_FOUND,
                f"No agent handles draft type '{draft.type}'",
                suggested_action=ACTION_REGENERATE,
            )
        adapter = self._adapters.get(name)
        if adapter is None:
            return gateway_error(
                AGENT_NOT_FOUND,
                f"Unknown agent_type '{name}'",
                suggested_action=ACTION_REGENERATE,
            )
        if draft.type not in adapter.handles:
            return gateway_error(
                AGENT_NOT_FOUND,
                f"Agent '{name}' does not handle draft type '{draft.type}'",
                suggested_action=ACTION_REGENERATE,
            )
        return adapter
