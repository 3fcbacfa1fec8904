from __future__ import annotations

from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .ui import UIRequest


class TenantIdentity(BaseModel):
    """Tenant facts that may be persisted in the event log."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1)
    business_id: str | None = None
    user_id: str | None = None
    allowed_agents: tuple[str, ...] = ()


class TenantContext(TenantIdentity):
    # Supplied per request; never serialised into entries or responses.
    user_token: str | None = Field(default=None, exclude=True, repr=False)

    @classmethod
    def from_identity(cls, identity: TenantIdentity, *, user_token: str | None) -> "TenantContext":
        return cls(**identity.model_dump(), user_token=user_token)

    def identity(self) -> TenantIdentity:
        return TenantIdentity(**self.model_dump())


class TaskResultStatus(str, Enum):
    COMPLETE = "complete"
    PENDING_USER_INPUT = "pending_user_input"
    ERROR = "error"
    ESCALATED = "escalated"


class TaskError(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class UIAugmentation(BaseModel):
    requests: list[UIRequest] = Field(default_factory=list)
    reason: str | None = None


class A2ATask(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"task_{uuid4().hex}")
    type: str = Field(..., min_length=1)
    input: dict[str, Any] = Field(default_factory=dict)
    tenant_context: TenantContext
    metadata: dict[str, Any] = Field(default_factory=dict)


class A2ATaskResult(BaseModel):
    status: TaskResultStatus
    result: dict[str, Any] | None = None
    error: TaskError | None = None
    ui_augmentation: UIAugmentation | None = None
    reasoning: str | None = None

    @model_validator(mode="after")
    def _error_requires_detail(self) -> "A2ATaskResult":
        if self.status is TaskResultStatus.ERROR and self.error is None:
            raise ValueError("error results must carry an error")
        return self

    @classmethod
    def complete(cls, result: dict[str, Any] | None = None, *, reasoning: str | None = None) -> "A2ATaskResult":
        return cls(status=TaskResultStatus.COMPLETE, result=result or {}, reasoning=reasoning)

    @classmethod
    def failed(cls, code: str, message: str, *, details: dict[str, Any] | None = None) -> "A2ATaskResult":
        return cls(status=TaskResultStatus.ERROR, error=TaskError(code=code, message=message, details=details or {}))

    @classmethod
    def needs_input(
        cls,
        requests: list[UIRequest],
        *,
        reason: str | None = None,
        result: dict[str, Any] | None = None,
    ) -> "A2ATaskResult":
        return cls(
            status=TaskResultStatus.PENDING_USER_INPUT,
            result=result,
            ui_augmentation=UIAugmentation(requests=requests, reason=reason),
            reasoning=reason,
        )


__all__ = [
    "A2ATask",
    "A2ATaskResult",
    "TaskError",
    "TaskResultStatus",
    "TenantContext",
    "TenantIdentity",
    "UIAugmentation",
]
