from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class Goal(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    required: bool = True
    success_criteria: list[str] = Field(default_factory=list)


class TemplateGoals(BaseModel):
    model_config = ConfigDict(extra="forbid")

    primary: list[Goal] = Field(..., min_length=1)
    secondary: list[Goal] = Field(default_factory=list)


class PhaseHint(BaseModel):
    """Non-prescriptive description of a stage a task usually goes through.

    ``suggested_agents`` is only consulted when the planner output cannot be used
    and the deterministic sequential plan has to be derived from the template.
    """

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    description: str = ""
    estimated_duration_minutes: int | None = Field(default=None, ge=0)
    may_run_in_background: bool = False
    may_require_user_interaction: bool = False
    suggested_agents: list[str] = Field(default_factory=list)


class FallbackStrategy(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    trigger: str = Field(..., min_length=1)
    action: str = Field(..., min_length=1)
    message: str = ""
    max_attempts: int | None = Field(default=None, ge=1, le=3)

    @property
    def is_retry(self) -> bool:
        return self.action.lower().startswith("retry")


_EXECUTION_SCRIPT_KEYS = frozenset({"steps", "actions", "agent_calls", "agents", "execution_order"})


class TaskTemplate(BaseModel):
    """Declarative goals for a task. Execution order is never part of a template."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    name: str = Field(..., min_length=1)
    version: str = "1.0.0"
    description: str = ""
    goals: TemplateGoals
    phases: list[PhaseHint] = Field(default_factory=list)
    fallback_strategies: list[FallbackStrategy] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _reject_execution_scripts(cls, value: Any) -> Any:
        if isinstance(value, dict):
            offending = sorted(_EXECUTION_SCRIPT_KEYS.intersection(value))
            if offending:
                raise ValueError(f"templates declare goals, not execution scripts: {', '.join(offending)}")
        return value

    @field_validator("phases")
    @classmethod
    def _unique_phase_ids(cls, value: list[PhaseHint]) -> list[PhaseHint]:
        seen: set[str] = set()
        for hint in value:
            if hint.id in seen:
                raise ValueError(f"duplicate phase hint id: {hint.id}")
            seen.add(hint.id)
        return value

    def snapshot(self) -> "TaskTemplate":
        return self.model_copy(deep=True)

    def required_goal_ids(self) -> list[str]:
        return [goal.id for goal in self.goals.primary if goal.required]


__all__ = ["FallbackStrategy", "Goal", "PhaseHint", "TaskTemplate", "TemplateGoals"]
