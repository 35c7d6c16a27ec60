"""Execution policy configuration models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator


def _ensure_list(v: Any) -> list:
    """Convert None to empty list, pass through lists."""
    if v is None:
        return []
    return v


class PolicyDefaults(BaseModel):
    require_owner_approval: bool = Field(default=False)
    enabled_modules: list[str] = Field(default_factory=list)

    @field_validator("enabled_modules", mode="before")
    @classmethod
    def _validate_enabled_modules(cls, v: Any) -> list:
        return _ensure_list(v)


class WorkspacePolicyOverride(BaseModel):
    """Per-workspace override from ``policy.yaml``; unset fields inherit defaults."""

    require_owner_approval: bool | None = None
    enabled_modules: list[str] | None = None


class PolicyConfig(BaseModel):
    version: int = Field(default=1)
    defaults: PolicyDefaults = Field(default_factory=PolicyDefaults)
    workspaces: dict[str, WorkspacePolicyOverride] = Field(default_factory=dict)

    @field_validator("workspaces", mode="before")
    @classmethod
    def _validate_workspaces(cls, v: Any) -> dict:
        if v is None:
            return {}
        # An empty mapping entry in YAML parses as None.
        if isinstance(v, dict):
            return {k: (val if val is not None else {}) for k, val in v.items()}
        return v

    @classmethod
    def from_yaml(cls, data: dict[str, object]) -> "PolicyConfig":
        return cls.model_validate(data)
