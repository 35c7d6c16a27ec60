"""Agent adapters that turn confirmed drafts into workspace writes."""

from draft_gateway.adapters.base import (
    AgentAdapter,
    DryRunResult,
    ExecuteResult,
    ExecutionContext,
)
from draft_gateway.adapters.chat import ChatAdapter
from draft_gateway.adapters.registry import AdapterRegistry
from draft_gateway.adapters.teamwork import TeamworkAdapter

__all__ = [
    "AdapterRegistry",
    "AgentAdapter",
    "ChatAdapter",
    "DryRunResult",
    "ExecuteResult",
    "ExecutionContext",
    "TeamworkAdapter",
    "build_default_registry",
]


def build_default_registry() -> AdapterRegistry:
    return AdapterRegistry([TeamworkAdapter(), ChatAdapter()])
