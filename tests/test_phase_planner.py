from __future__ import annotations

import pytest

from compliflow.agents.base import AgentCapability
from compliflow.core.config import PlannerLLMSettings
from compliflow.core.errors import LLMUnavailableError, PlanningValidationError
from compliflow.orchestration.planner import PhasePlanner, build_default_plan, build_planning_prompt
from compliflow.orchestration.planner_contract import PhaseGraphGatekeeper
from compliflow.orchestration.projection import project_state
from compliflow.schemas.a2a import TenantContext
from compliflow.schemas.context import TaskContext
from tests.helpers.stubs import ROLES, ScriptedLLM, make_template, phase, plan_json

ROSTER = [AgentCapability(role=role, name=role) for role in ROLES]


def _context() -> TaskContext:
    template = make_template()
    return TaskContext(
        context_id="ctx-1",
        tenant=TenantContext(tenant_id="tenant-a"),
        template_id=template.id,
        template_snapshot=template,
        history=[],
        current_state=project_state([]),
    )


def _planner(llm: ScriptedLLM, **settings: object) -> PhasePlanner:
    return PhasePlanner(llm, PlannerLLMSettings(**settings))


@pytest.mark.asyncio
async def test_valid_plan_is_accepted_on_first_attempt() -> None:
    llm = ScriptedLLM(
        [
            plan_json(
                phase("discovery", ["profile_collector"], parallelizable=False),
                phase("analysis", ["entity_compliance"], prerequisites=["discovery"]),
                phase("review", ["ux_optimization"], prerequisites=["discovery"]),
            )
        ]
    )

    outcome = await _planner(llm).plan(make_template(), _context(), ROSTER)

    assert outcome.source == "llm"
    assert outcome.attempts == 1
    assert outcome.graph.phase_ids == ["discovery", "analysis", "review"]
    assert llm.requests[0].schema is not None
    assert llm.requests[0].response_format == "json"


@pytest.mark.asyncio
async def test_invalid_plan_triggers_single_reprompt_with_errors() -> None:
    llm = ScriptedLLM(
        [
            plan_json(phase("discovery", ["tax_wizard"])),
            plan_json(phase("discovery", ["profile_collector"])),
        ]
    )

    outcome = await _planner(llm).plan(make_template(), _context(), ROSTER)

    assert outcome.source == "llm_reprompt"
    assert outcome.attempts == 2
    assert "unavailable agent: tax_wizard" in llm.requests[1].prompt
    assert outcome.validation_errors == ["phase discovery requires unavailable agent: tax_wizard"]


@pytest.mark.asyncio
async def test_repeated_invalid_plans_fall_back_to_template_default() -> None:
    cyclic = plan_json(
        phase("a", ["profile_collector"], prerequisites=["b"]),
        phase("b", ["entity_compliance"], prerequisites=["a"]),
    )
    llm = ScriptedLLM([cyclic, "no json here"])

    outcome = await _planner(llm).plan(make_template(), _context(), ROSTER)

    assert outcome.source == "template_default"
    assert len(llm.requests) == 2
    assert outcome.graph.phase_ids == ["business_discovery", "compliance_analysis"]
    assert [phase.parallelizable for phase in outcome.graph.phases] == [False, False]
    assert outcome.graph.get("compliance_analysis").prerequisites == ("business_discovery",)


@pytest.mark.asyncio
async def test_unavailable_model_goes_straight_to_default_plan() -> None:
    llm = ScriptedLLM([LLMUnavailableError("connection refused")])

    outcome = await _planner(llm).plan(make_template(), _context(), ROSTER)

    assert outcome.source == "template_default"
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_unusable_default_plan_raises() -> None:
    llm = ScriptedLLM([LLMUnavailableError("down")])
    roster = [AgentCapability(role="ux_optimization", name="ux")]

    with pytest.raises(PlanningValidationError):
        await _planner(llm).plan(make_template(), _context(), roster)


def test_default_plan_skips_hints_without_available_agents() -> None:
    template = make_template()
    graph = build_default_plan(template, [AgentCapability(role="entity_compliance", name="ec")])

    assert graph.phase_ids == ["compliance_analysis"]
    assert graph.phases[0].prerequisites == ()


def test_prompt_lists_goals_roster_and_hides_suggested_agents() -> None:
    prompt = build_planning_prompt(make_template(), _context(), ROSTER)

    assert "business_profile" in prompt
    assert "Available agents" in prompt
    assert "ux_optimization" in prompt
    assert "suggested_agents" not in prompt


@pytest.mark.parametrize(
    ("phases", "expected"),
    [
        ([phase("a", ["profile_collector"]), phase("a", ["entity_compliance"])], "duplicate phase id: a"),
        ([phase("a", ["profile_collector"], prerequisites=["ghost"])], "unknown prerequisite: ghost"),
        ([phase("a", ["profile_collector"], prerequisites=["a"])], "lists itself"),
        ([phase("a", ["robot"])], "unavailable agent: robot"),
        (
            [
                phase("a", ["profile_collector"], prerequisites=["c"]),
                phase("b", ["profile_collector"], prerequisites=["a"]),
                phase("c", ["profile_collector"], prerequisites=["b"]),
            ],
            "cycle",
        ),
    ],
)
def test_gatekeeper_rejects_structural_errors(phases: list[dict], expected: str) -> None:
    with pytest.raises(PlanningValidationError) as exc_info:
        PhaseGraphGatekeeper().enforce({"phases": phases}, roster=ROLES)

    assert any(expected in error for error in exc_info.value.errors)


def test_gatekeeper_rejects_empty_plan_and_unknown_keys() -> None:
    gatekeeper = PhaseGraphGatekeeper()

    with pytest.raises(PlanningValidationError):
        gatekeeper.enforce({"phases": []}, roster=ROLES)
    with pytest.raises(PlanningValidationError) as exc_info:
        gatekeeper.enforce({"phases": [{**phase("a", ["profile_collector"]), "script": "run"}]}, roster=ROLES)
    assert exc_info.value.errors[0].startswith("schema")


def test_topological_order_respects_prerequisites() -> None:
    graph = PhaseGraphGatekeeper().enforce(
        {
            "phases": [
                phase("report", ["ux_optimization"], prerequisites=["analysis"]),
                phase("analysis", ["entity_compliance"], prerequisites=["discovery"]),
                phase("discovery", ["profile_collector"]),
            ]
        },
        roster=ROLES,
    )

    assert [item.id for item in graph.topological_order()] == ["discovery", "analysis", "report"]
