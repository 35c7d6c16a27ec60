"""Request and draft models for both protocol generations."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from draft_gateway.utils.hashing import canonical_json

RoleName = Literal["member", "admin", "owner"]
DraftMode = Literal["dry_run", "confirm", "execute"]

_ID_MAX_LENGTH = 128


def _ensure_list(v: Any) -> list:
    if v is None:
        return []
    return v


def _require_canonical(value: Any, what: str) -> None:
    # Signed and hashed content must have one canonical JSON form.
    try:
        canonical_json(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{what} must be plain JSON: {exc}") from exc


class AffectedEntity(BaseModel):
    entity_type: str
    entity_id: str | None = None
    action: str = "create"
    diff: dict[str, Any] | None = None


class DraftScope(BaseModel):
    affected_modules: list[str] = Field(default_factory=list)
    affected_entities: list[AffectedEntity] = Field(default_factory=list)
    impact_summary: str = Field(default="")

    @field_validator("affected_modules", "affected_entities", mode="before")
    @classmethod
    def _validate_lists(cls, v: Any) -> list:
        return _ensure_list(v)


class DraftMeaning(BaseModel):
    """Either a reference to a bound meaning record or an inline payload to mint one."""

    meaning_object_id: str | None = Field(default=None, min_length=1, max_length=_ID_MAX_LENGTH)
    meaning_payload: dict[str, Any] | None = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "DraftMeaning":
        has_ref = self.meaning_object_id is not None
        has_payload = self.meaning_payload is not None
        if has_ref == has_payload:
            raise ValueError("meaning requires exactly one of meaning_object_id or meaning_payload")
        if has_payload and not self.meaning_payload:
            raise ValueError("meaning_payload must not be empty")
        return self

    @property
    def is_reference(self) -> bool:
        return self.meaning_object_id is not None


class Draft(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1, max_length=_ID_MAX_LENGTH)
    type: str = Field(min_length=1, max_length=64)
    title: str = Field(default="", max_length=500)
    description: str | None = Field(default=None, max_length=10_000)
    target_module: str = Field(min_length=1, max_length=64)
    agent_type: str | None = Field(default=None, max_length=64)
    payload: dict[str, Any] = Field(default_factory=dict)
    required_role: RoleName = "member"
    intent: str = Field(default="", max_length=2_000)
    scope: DraftScope = Field(default_factory=DraftScope)
    risks: list[str] = Field(default_factory=list)
    rollback_possible: bool = True
    meaning: DraftMeaning
    expires_at: int | None = Field(default=None, ge=0)

    @field_validator("risks", mode="before")
    @classmethod
    def _validate_risks(cls, v: Any) -> list:
        return _ensure_list(v)

    @field_validator("payload", mode="before")
    @classmethod
    def _validate_payload(cls, v: Any) -> Any:
        if v is None:
            return {}
        return v

    @model_validator(mode="after")
    def _canonical_content(self) -> "Draft":
        _require_canonical(self.signed_content(), "draft")
        if self.meaning.meaning_payload is not None:
            _require_canonical(self.meaning.meaning_payload, "meaning_payload")
        return self

    def signed_content(self) -> dict[str, Any]:
        """The part of a draft covered by its confirmation signature.

        The meaning block is excluded because it changes from an inline
        payload at confirm to a reference at execute.
        """
        return {
            "type": self.type,
            "agent_type": self.agent_type,
            "target_module": self.target_module,
            "required_role": self.required_role,
            "payload": self.payload,
        }


class DraftRequest(BaseModel):
    mode: DraftMode
    workspace_id: str = Field(min_length=1, max_length=_ID_MAX_LENGTH)
    draft: Draft
    confirmation_hash: str | None = Field(default=None, max_length=256)
    request_id: str | None = Field(default=None, min_length=1, max_length=_ID_MAX_LENGTH)


class LegacyProposal(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = Field(default=None, min_length=1, max_length=_ID_MAX_LENGTH)
    type: Literal["task", "goal", "plan", "idea", "update"]
    title: str = Field(default="", max_length=500)
    payload: dict[str, Any] = Field(default_factory=dict)
    required_role: RoleName = "member"
    confirmation_hash: str | None = Field(default=None, max_length=256)
    expires_at: int | None = Field(default=None, ge=0)

    @field_validator("payload", mode="before")
    @classmethod
    def _validate_payload(cls, v: Any) -> Any:
        if v is None:
            return {}
        return v

    @model_validator(mode="after")
    def _canonical_content(self) -> "LegacyProposal":
        _require_canonical(self.payload, "payload")
        _require_canonical(self.model_extra or {}, "proposal")
        return self


class LegacySignRequest(BaseModel):
    action: Literal["sign"]
    workspace_id: str = Field(min_length=1, max_length=_ID_MAX_LENGTH)
    proposals: list[LegacyProposal]
    request_id: str | None = Field(default=None, min_length=1, max_length=_ID_MAX_LENGTH)


class LegacyExecuteRequest(BaseModel):
    action: Literal["execute"]
    workspace_id: str = Field(min_length=1, max_length=_ID_MAX_LENGTH)
    proposal: LegacyProposal
    request_id: str | None = Field(default=None, min_length=1, max_length=_ID_MAX_LENGTH)


def describe_validation_error(exc: ValidationError, limit: int = 3) -> str:
    """Short human-readable summary of a pydantic validation error."""
    parts: list[str] = []
    for error in exc.errors()[:limit]:
        location = ".".join(str(item) for item in error.get("loc", ()))
        message = error.get("msg", "invalid value")
        parts.append(f"{location}: {message}" if location else message)
    return "; ".join(parts) or "Invalid request"
