from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from .context import ContextEntry, CurrentState


class CreateContextRequest(BaseModel):
    template_id: str = Field(..., min_length=1)
    initial_input: dict[str, Any] = Field(default_factory=dict)
    business_id: str | None = None
    allowed_agents: list[str] | None = Field(
        default=None,
        description="Agent roles this tenant may use; defaults to every registered agent.",
    )


class ContextResponse(BaseModel):
    context_id: str
    tenant_id: str
    template_id: str
    state: CurrentState


class ContextListResponse(BaseModel):
    contexts: list[str]


class EntriesResponse(BaseModel):
    context_id: str
    entries: list[ContextEntry]


class StateDiffResponse(BaseModel):
    context_id: str
    from_sequence: int
    to_sequence: int
    changes: dict[str, Any]


class UserInputRequest(BaseModel):
    data: dict[str, Any] = Field(..., min_length=1)
    responds_to: list[str] = Field(default_factory=list)
    corrects: str | None = Field(default=None, description="Entry id of an earlier answer this input replaces.")


class RoundResponse(BaseModel):
    context_id: str
    round: int
    status: str
    plan_source: str | None = None
    completed_phases: list[str] = Field(default_factory=list)
    pending_ui: int = 0
    error: dict[str, Any] | None = None
    skipped: bool = False


class PendingUIResponse(BaseModel):
    context_id: str
    elements: list[dict[str, Any]]
    batches: list[list[str]]


class TemplateSummary(BaseModel):
    id: str
    name: str
    version: str
    description: str
    goals: list[str]


__all__ = [
    "ContextListResponse",
    "ContextResponse",
    "CreateContextRequest",
    "EntriesResponse",
    "PendingUIResponse",
    "RoundResponse",
    "StateDiffResponse",
    "TemplateSummary",
    "UserInputRequest",
]
