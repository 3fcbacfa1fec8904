from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, JsonValue, model_validator

from .a2a import TenantContext
from .operations import EntryPayload, OperationPayload, parse_operation
from .templates import TaskTemplate


class ActorType(str, Enum):
    SYSTEM = "system"
    AGENT = "agent"
    USER = "user"


class ContextStatus(str, Enum):
    CREATED = "created"
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    NEEDS_INPUT = "needs_input"
    COMPLETE = "complete"
    ERROR = "error"


class Actor(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ActorType
    id: str = Field(..., min_length=1)
    version: str | None = None

    @classmethod
    def system(cls, id: str = "orchestrator", version: str | None = "1.0.0") -> "Actor":
        return cls(type=ActorType.SYSTEM, id=id, version=version)

    @classmethod
    def agent(cls, role: str, version: str | None = None) -> "Actor":
        return cls(type=ActorType.AGENT, id=role, version=version)

    @classmethod
    def user(cls, user_id: str) -> "Actor":
        return cls(type=ActorType.USER, id=user_id)


class EntryTrigger(BaseModel):
    model_config = ConfigDict(frozen=True)

    source: str
    request_id: str | None = None


class ContextEntry(BaseModel):
    """One immutable fact in a context's history.

    ``sequence_number`` is ``None`` until the event store accepts the entry; the store
    is the only component that assigns it.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    entry_id: str = Field(default_factory=lambda: f"entry_{uuid4().hex}")
    context_id: str = Field(..., min_length=1)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sequence_number: int | None = Field(default=None, ge=1)
    actor: Actor
    operation: str = Field(..., min_length=1)
    data: dict[str, JsonValue] = Field(default_factory=dict)
    reasoning: str | None = None
    trigger: EntryTrigger | None = None
    corrects: str | None = Field(default=None, description="Entry id this entry supersedes.")

    @model_validator(mode="after")
    def _require_reasoning_for_non_humans(self) -> "ContextEntry":
        if self.actor.type is not ActorType.USER and not (self.reasoning or "").strip():
            raise ValueError(f"{self.actor.type.value} entries must carry reasoning")
        return self

    @classmethod
    def record(
        cls,
        context_id: str,
        payload: OperationPayload,
        *,
        actor: Actor,
        reasoning: str | None,
        trigger: EntryTrigger | None = None,
        corrects: str | None = None,
    ) -> "ContextEntry":
        return cls(
            context_id=context_id,
            actor=actor,
            operation=payload.operation,
            data=payload.to_data(),
            reasoning=reasoning,
            trigger=trigger,
            corrects=corrects,
        )

    def payload(self) -> EntryPayload:
        return parse_operation(self.operation, self.data)

    def sequenced(self, sequence_number: int) -> "ContextEntry":
        return self.model_copy(update={"sequence_number": sequence_number}, deep=True)


class CurrentState(BaseModel):
    """Projection of a context's history. Never stored, always recomputed."""

    status: ContextStatus = ContextStatus.CREATED
    phase: str | None = "initialization"
    completeness: int = Field(0, ge=0, le=100)
    data: dict[str, Any] = Field(default_factory=dict)
    round: int = 0
    planned_phases: list[str] = Field(default_factory=list)
    completed_phases: list[str] = Field(default_factory=list)
    pending_ui: list[dict[str, Any]] = Field(default_factory=list)
    pending_ui_batches: list[list[str]] = Field(default_factory=list)
    escalations: list[dict[str, Any]] = Field(default_factory=list)
    last_error: dict[str, Any] | None = None
    corrected_entries: list[str] = Field(default_factory=list)
    last_sequence: int = 0
    entry_count: int = 0


class TaskContext(BaseModel):
    context_id: str
    tenant: TenantContext
    template_id: str
    template_snapshot: TaskTemplate
    history: list[ContextEntry] = Field(default_factory=list)
    current_state: CurrentState = Field(default_factory=CurrentState)

    @property
    def tenant_id(self) -> str:
        return self.tenant.tenant_id


__all__ = [
    "Actor",
    "ActorType",
    "ContextEntry",
    "ContextStatus",
    "CurrentState",
    "EntryTrigger",
    "TaskContext",
]
