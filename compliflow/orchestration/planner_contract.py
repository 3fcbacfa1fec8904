from __future__ import annotations

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Collection, Iterable, Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..core.errors import PlanningValidationError
from ..core.logging import get_logger
from ..core.metrics import increment_plan_validation_failure

__all__ = [
    "Phase",
    "PhaseGraph",
    "PhaseGraphGatekeeper",
    "PhaseGraphPayload",
    "PhasePayload",
    "find_graph_errors",
]

logger = get_logger(name=__name__)


def _coerce_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        raise ValueError("expected a list of strings")
    return list(value)


class PhasePayload(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    id: str = Field(..., min_length=1)
    name: str = Field(default="")
    description: str = Field(default="")
    required_agents: list[str] = Field(..., min_length=1)
    prerequisites: list[str] = Field(default_factory=list)
    parallelizable: bool = Field(default=True)
    goals: list[str] = Field(default_factory=list)

    @field_validator("required_agents", "prerequisites", "goals", mode="before")
    @classmethod
    def _coerce_lists(cls, value: Any) -> list[str]:
        return _coerce_str_list(value)

    @field_validator("required_agents", "prerequisites", "goals")
    @classmethod
    def _strip_items(cls, value: list[str]) -> list[str]:
        normalized: list[str] = []
        for item in value:
            if not isinstance(item, str):
                raise ValueError("entries must be strings")
            trimmed = item.strip()
            if not trimmed:
                raise ValueError("entries cannot be blank")
            if trimmed not in normalized:
                normalized.append(trimmed)
        return normalized


class PhaseGraphPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    phases: list[PhasePayload] = Field(..., min_length=1)
    rationale: str = Field(default="")


@dataclass(slots=True, frozen=True)
class Phase:
    id: str
    required_agents: tuple[str, ...]
    prerequisites: tuple[str, ...] = ()
    parallelizable: bool = True
    goals: tuple[str, ...] = ()
    name: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "required_agents": list(self.required_agents),
            "prerequisites": list(self.prerequisites),
            "parallelizable": self.parallelizable,
            "goals": list(self.goals),
        }


@dataclass(slots=True)
class PhaseGraph:
    phases: list[Phase]
    rationale: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def get(self, phase_id: str) -> Phase | None:
        for phase in self.phases:
            if phase.id == phase_id:
                return phase
        return None

    @property
    def phase_ids(self) -> list[str]:
        return [phase.id for phase in self.phases]

    def topological_order(self) -> list[Phase]:
        order = _kahn(self.phases)
        if order is None:
            raise PlanningValidationError("Phase graph contains a cycle")
        return order

    def to_entry_data(self) -> list[dict[str, Any]]:
        return [phase.to_dict() for phase in self.topological_order()]


def _kahn(phases: Iterable[Phase]) -> list[Phase] | None:
    """Kahn's algorithm; returns ``None`` when the graph has a cycle."""
    phases = list(phases)
    by_id = {phase.id: phase for phase in phases}
    indegree = {phase.id: 0 for phase in phases}
    dependents: dict[str, list[str]] = {phase.id: [] for phase in phases}
    for phase in phases:
        for prerequisite in phase.prerequisites:
            if prerequisite in by_id:
                indegree[phase.id] += 1
                dependents[prerequisite].append(phase.id)

    queue = deque(phase.id for phase in phases if indegree[phase.id] == 0)
    ordered: list[Phase] = []
    while queue:
        phase_id = queue.popleft()
        ordered.append(by_id[phase_id])
        for dependent in dependents[phase_id]:
            indegree[dependent] -= 1
            if indegree[dependent] == 0:
                queue.append(dependent)
    if len(ordered) != len(phases):
        return None
    return ordered


def find_graph_errors(phases: Iterable[Phase], roster: Collection[str]) -> list[str]:
    """All structural problems of a phase set; an empty list means the graph is usable."""
    phases = list(phases)
    errors: list[str] = []
    if not phases:
        return ["plan contains no phases"]

    seen: set[str] = set()
    for phase in phases:
        if phase.id in seen:
            errors.append(f"duplicate phase id: {phase.id}")
        seen.add(phase.id)

    for phase in phases:
        for prerequisite in phase.prerequisites:
            if prerequisite == phase.id:
                errors.append(f"phase {phase.id} lists itself as a prerequisite")
            elif prerequisite not in seen:
                errors.append(f"phase {phase.id} has unknown prerequisite: {prerequisite}")
        for agent in phase.required_agents:
            if agent not in roster:
                errors.append(f"phase {phase.id} requires unavailable agent: {agent}")

    if not any(error.startswith("duplicate") for error in errors) and _kahn(phases) is None:
        errors.append("prerequisites form a cycle")
    return errors


def _reason(errors: list[str]) -> str:
    first = errors[0] if errors else "unknown"
    for marker in ("duplicate", "unknown prerequisite", "itself", "unavailable agent", "cycle", "no phases", "schema"):
        if marker in first:
            return marker.replace(" ", "_")
    return "invalid"


class PhaseGraphGatekeeper:
    """Accepts planner output only when it forms a valid phase graph over the roster."""

    def enforce(self, payload: Mapping[str, Any], *, roster: Collection[str]) -> PhaseGraph:
        try:
            model = PhaseGraphPayload.model_validate(payload)
        except ValidationError as exc:
            errors = [
                f"schema: {'.'.join(str(part) for part in detail.get('loc', ()))}: {detail.get('msg')}"
                for detail in exc.errors()
            ]
            self._reject(errors)
            raise PlanningValidationError("Phase graph failed schema validation", errors=errors) from exc

        phases = [
            Phase(
                id=item.id,
                name=item.name or item.id,
                required_agents=tuple(item.required_agents),
                prerequisites=tuple(item.prerequisites),
                parallelizable=item.parallelizable,
                goals=tuple(item.goals),
            )
            for item in model.phases
        ]
        return self.check(PhaseGraph(phases=phases, rationale=model.rationale), roster=roster)

    def check(self, graph: PhaseGraph, *, roster: Collection[str]) -> PhaseGraph:
        errors = find_graph_errors(graph.phases, roster)
        if errors:
            self._reject(errors)
            raise PlanningValidationError("Phase graph is not executable", errors=errors)
        return graph

    @staticmethod
    def _reject(errors: list[str]) -> None:
        reason = _reason(errors)
        increment_plan_validation_failure(reason=reason)
        logger.warning("phase_graph_rejected", reason=reason, errors=errors)
