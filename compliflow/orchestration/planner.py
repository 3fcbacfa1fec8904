from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Sequence

from ..agents.base import AgentCapability
from ..core.config import PlannerLLMSettings
from ..core.errors import LLMUnavailableError, PlanningValidationError
from ..core.logging import get_logger
from ..core.metrics import record_plan_metrics
from ..schemas.context import TaskContext
from ..schemas.operations import PlanSource
from ..schemas.templates import TaskTemplate
from ..services.llm import LLMClient, LLMRequest
from .planner_contract import Phase, PhaseGraph, PhaseGraphGatekeeper

logger = get_logger(name=__name__)

PHASE_GRAPH_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["phases"],
    "properties": {
        "rationale": {"type": "string"},
        "phases": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["id", "required_agents", "prerequisites", "parallelizable"],
                "properties": {
                    "id": {"type": "string"},
                    "name": {"type": "string"},
                    "required_agents": {"type": "array", "items": {"type": "string"}},
                    "prerequisites": {"type": "array", "items": {"type": "string"}},
                    "parallelizable": {"type": "boolean"},
                    "goals": {"type": "array", "items": {"type": "string"}},
                },
            },
        },
    },
}

_INSTRUCTIONS = (
    "Respond with a single JSON object and nothing else:\n"
    "{\n"
    '  "rationale": "why the phases are ordered this way",\n'
    '  "phases": [\n'
    '    {"id": "business_discovery", "name": "Business Discovery", "required_agents": ["profile_collector"],'
    ' "prerequisites": [], "parallelizable": false, "goals": ["business_profile"]}\n'
    "  ]\n"
    "}\n"
    "Rules:\n"
    "- Only use agent roles listed under Available agents.\n"
    "- prerequisites may only name phase ids defined in the same plan, and must not form a cycle.\n"
    "- Mark a phase parallelizable only when it can run alongside other ready phases.\n"
    "- Skip work that Current state shows as already done."
)


class PlannerError(RuntimeError):
    """Raised when the planner response cannot be read as JSON."""


@dataclass(slots=True)
class PlanOutcome:
    graph: PhaseGraph
    source: PlanSource
    attempts: int
    validation_errors: list[str] = field(default_factory=list)


def _parse_json(text: str) -> dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end == -1 or end <= start:
            raise PlannerError("Planner response did not contain JSON") from None
        try:
            payload = json.loads(text[start : end + 1])
        except json.JSONDecodeError as exc:
            raise PlannerError("Planner response contained malformed JSON") from exc
    if not isinstance(payload, dict):
        raise PlannerError("Planner response must be a JSON object")
    return payload


def _summarize_history(context: TaskContext, window: int) -> str:
    lines = []
    for entry in context.history[-window:]:
        reasoning = f": {entry.reasoning}" if entry.reasoning else ""
        lines.append(f"#{entry.sequence_number} [{entry.actor.type.value}:{entry.actor.id}] {entry.operation}{reasoning}")
    return "\n".join(lines) if lines else "(no history)"


def _summarize_roster(roster: Sequence[AgentCapability]) -> str:
    return json.dumps([capability.describe() for capability in roster], indent=2)


def build_planning_prompt(
    template: TaskTemplate,
    context: TaskContext,
    roster: Sequence[AgentCapability],
    *,
    history_window: int = 20,
) -> str:
    """Pure prompt construction: goals, accumulated context and the agent roster."""
    goals = {
        "primary": [goal.model_dump(mode="json") for goal in template.goals.primary],
        "secondary": [goal.model_dump(mode="json") for goal in template.goals.secondary],
    }
    hints = [
        hint.model_dump(mode="json", exclude={"suggested_agents"})
        for hint in template.phases
    ]
    state = context.current_state
    current = {
        "status": state.status.value,
        "round": state.round,
        "completed_phases": state.completed_phases,
        "data": state.data,
    }
    sections = [
        ("Task template", f"{template.name} ({template.id} v{template.version})\n{template.description}".strip()),
        ("Goals", json.dumps(goals, indent=2, sort_keys=True)),
        ("Phase hints (non-binding)", json.dumps(hints, indent=2, sort_keys=True)),
        ("Current state", json.dumps(current, indent=2, sort_keys=True, default=str)),
        ("Recent history", _summarize_history(context, history_window)),
        ("Available agents", _summarize_roster(roster)),
        ("Instructions", _INSTRUCTIONS),
    ]
    return "\n\n".join(f"{title}:\n{body}" for title, body in sections)


def _reprompt(prompt: str, errors: Sequence[str]) -> str:
    bullet_list = "\n".join(f"- {error}" for error in errors)
    return f"{prompt}\n\nYour previous plan was rejected:\n{bullet_list}\nReturn a corrected plan."


def build_default_plan(template: TaskTemplate, roster: Sequence[AgentCapability]) -> PhaseGraph:
    """Sequential plan from the template's phase hints, restricted to available agents."""
    available = {capability.role for capability in roster}
    phases: list[Phase] = []
    for hint in template.phases:
        agents = tuple(agent for agent in hint.suggested_agents if agent in available)
        if not agents:
            continue
        phases.append(
            Phase(
                id=hint.id,
                name=hint.name,
                required_agents=agents,
                prerequisites=(phases[-1].id,) if phases else (),
                parallelizable=False,
                goals=tuple(template.required_goal_ids()),
            )
        )
    return PhaseGraph(phases=phases, rationale="Template default sequential plan")


class PhasePlanner:
    """LLM phase planner behind the phase-graph validity gate.

    One re-prompt carries the validation errors back to the model; if that plan is
    still unusable the template's default sequential plan is used instead.
    """

    def __init__(
        self,
        llm: LLMClient,
        settings: PlannerLLMSettings,
        *,
        gatekeeper: PhaseGraphGatekeeper | None = None,
    ) -> None:
        self._llm = llm
        self._settings = settings
        self._gatekeeper = gatekeeper or PhaseGraphGatekeeper()

    async def plan(
        self,
        template: TaskTemplate,
        context: TaskContext,
        roster: Sequence[AgentCapability],
    ) -> PlanOutcome:
        roles = [capability.role for capability in roster]
        base_prompt = build_planning_prompt(template, context, roster, history_window=self._settings.history_window)
        prompt = base_prompt
        errors: list[str] = []
        attempts = 0

        for attempt in range(1 + self._settings.max_reprompts):
            attempts = attempt + 1
            try:
                response = await self._llm.complete(
                    LLMRequest(
                        prompt=prompt,
                        model=self._settings.model,
                        system_prompt=self._settings.system_prompt,
                        response_format="json",
                        schema=PHASE_GRAPH_SCHEMA,
                        temperature=self._settings.temperature,
                        max_tokens=self._settings.max_output_tokens,
                    )
                )
            except LLMUnavailableError as exc:
                errors = [f"planner model unavailable: {exc.message}"]
                logger.warning("phase_planner_llm_unavailable", context_id=context.context_id, error=exc.message)
                break

            try:
                graph = self._gatekeeper.enforce(_parse_json(response.content), roster=roles)
            except PlannerError as exc:
                errors = [str(exc)]
            except PlanningValidationError as exc:
                errors = exc.errors or [exc.message]
            else:
                source: PlanSource = "llm" if attempt == 0 else "llm_reprompt"
                record_plan_metrics(source=source, status="accepted", phases=len(graph.phases))
                logger.info(
                    "phase_plan_accepted",
                    context_id=context.context_id,
                    source=source,
                    phases=graph.phase_ids,
                )
                return PlanOutcome(graph=graph, source=source, attempts=attempts, validation_errors=errors)

            logger.info("phase_plan_rejected", context_id=context.context_id, attempt=attempts, errors=errors)
            prompt = _reprompt(base_prompt, errors)

        fallback = build_default_plan(template, roster)
        try:
            graph = self._gatekeeper.check(fallback, roster=roles)
        except PlanningValidationError as exc:
            record_plan_metrics(source="template_default", status="failed")
            raise PlanningValidationError(
                "No executable plan could be produced",
                errors=[*errors, *exc.errors],
            ) from exc
        record_plan_metrics(source="template_default", status="accepted", phases=len(graph.phases))
        logger.warning("phase_plan_fallback", context_id=context.context_id, errors=errors)
        return PlanOutcome(graph=graph, source="template_default", attempts=attempts, validation_errors=errors)


__all__ = [
    "PHASE_GRAPH_SCHEMA",
    "PhasePlanner",
    "PlanOutcome",
    "PlannerError",
    "build_default_plan",
    "build_planning_prompt",
]
