"""Typed payloads for the context entry operations the core understands.

Entries store their payload as a JSON object. ``parse_operation`` turns it back into
one of the models below; operations nobody registered become ``UnknownOperation``
so new producers never break older readers.
"""

from __future__ import annotations

from typing import Any, ClassVar, Literal, Mapping, Union

from pydantic import BaseModel, ConfigDict, Field, JsonValue, ValidationError

from ..core.logging import get_logger
from .a2a import TenantIdentity

logger = get_logger(name=__name__)

PhaseOutcome = Literal["complete", "needs_input", "error", "escalated"]
PlanSource = Literal["llm", "llm_reprompt", "template_default"]


class OperationPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    operation: ClassVar[str] = ""

    def to_data(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


class TaskCreated(OperationPayload):
    operation: ClassVar[str] = "task_created"

    template_id: str
    tenant: TenantIdentity
    template_snapshot: dict[str, Any]
    initial_input: dict[str, JsonValue] = Field(default_factory=dict)


class ExecutionPlanCreated(OperationPayload):
    operation: ClassVar[str] = "execution_plan_created"

    round: int
    source: PlanSource
    phases: list[dict[str, Any]]
    attempts: int = 1
    validation_errors: list[str] = Field(default_factory=list)


class PhaseStarted(OperationPayload):
    operation: ClassVar[str] = "phase_started"

    round: int
    phase_id: str
    phase_name: str = ""
    agents: list[str] = Field(default_factory=list)


class AgentOutcome(BaseModel):
    status: str
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None
    attempts: int = 1
    reasoning: str | None = None


class PhaseCompleted(OperationPayload):
    operation: ClassVar[str] = "phase_completed"

    round: int
    phase_id: str
    outcome: PhaseOutcome
    agents: dict[str, AgentOutcome] = Field(default_factory=dict)
    data: dict[str, JsonValue] = Field(default_factory=dict)


class UIRequestsCreated(OperationPayload):
    operation: ClassVar[str] = "ui_requests_created"

    round: int
    phase_id: str | None = None
    elements: list[dict[str, Any]]
    batches: list[list[str]] = Field(default_factory=list)
    summary: dict[str, Any] = Field(default_factory=dict)


class FallbackApplied(OperationPayload):
    operation: ClassVar[str] = "fallback_applied"

    round: int
    phase_id: str
    agent_role: str
    trigger: str
    action: str
    message: str = ""
    decision: Literal["retry", "escalate"]
    attempt: int = 1


class UserInputReceived(OperationPayload):
    operation: ClassVar[str] = "user_input_received"

    data: dict[str, JsonValue] = Field(default_factory=dict)
    responds_to: list[str] = Field(default_factory=list)


class RoundCompleted(OperationPayload):
    operation: ClassVar[str] = "round_completed"

    round: int
    completed_phases: list[str] = Field(default_factory=list)


class RoundNeedsInput(OperationPayload):
    operation: ClassVar[str] = "round_needs_input"

    round: int
    phase_ids: list[str] = Field(default_factory=list)
    escalations: list[dict[str, Any]] = Field(default_factory=list)


class RoundFailed(OperationPayload):
    operation: ClassVar[str] = "round_failed"

    round: int
    phase_id: str | None = None
    error: dict[str, Any] = Field(default_factory=dict)


class StatusUpdated(OperationPayload):
    operation: ClassVar[str] = "status_updated"

    status: str
    phase: str | None = None


class UnknownOperation(BaseModel):
    """Operation not known to this build. Its values are still JSON, never opaque."""

    operation: str
    values: dict[str, JsonValue] = Field(default_factory=dict)


KnownOperation = Union[
    TaskCreated,
    ExecutionPlanCreated,
    PhaseStarted,
    PhaseCompleted,
    UIRequestsCreated,
    FallbackApplied,
    UserInputReceived,
    RoundCompleted,
    RoundNeedsInput,
    RoundFailed,
    StatusUpdated,
]
EntryPayload = Union[KnownOperation, UnknownOperation]

OPERATION_MODELS: dict[str, type[OperationPayload]] = {
    model.operation: model
    for model in (
        TaskCreated,
        ExecutionPlanCreated,
        PhaseStarted,
        PhaseCompleted,
        UIRequestsCreated,
        FallbackApplied,
        UserInputReceived,
        RoundCompleted,
        RoundNeedsInput,
        RoundFailed,
        StatusUpdated,
    )
}


def parse_operation(operation: str, data: Mapping[str, Any]) -> EntryPayload:
    model = OPERATION_MODELS.get(operation)
    if model is None:
        return UnknownOperation(operation=operation, values=dict(data))
    try:
        return model.model_validate(dict(data))
    except ValidationError as exc:
        logger.warning("operation_payload_invalid", operation=operation, errors=exc.error_count())
        return UnknownOperation(operation=operation, values=dict(data))


__all__ = [
    "AgentOutcome",
    "EntryPayload",
    "ExecutionPlanCreated",
    "FallbackApplied",
    "KnownOperation",
    "OPERATION_MODELS",
    "OperationPayload",
    "PhaseCompleted",
    "PhaseOutcome",
    "PhaseStarted",
    "PlanSource",
    "RoundCompleted",
    "RoundFailed",
    "RoundNeedsInput",
    "StatusUpdated",
    "TaskCreated",
    "UIRequestsCreated",
    "UnknownOperation",
    "UserInputReceived",
    "parse_operation",
]
