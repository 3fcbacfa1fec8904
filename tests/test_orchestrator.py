from __future__ import annotations

import asyncio

import pytest

from compliflow.core.errors import InvalidRoundTransition, LLMUnavailableError
from compliflow.schemas.a2a import A2ATaskResult
from compliflow.schemas.context import ActorType, ContextStatus
from tests.helpers.stubs import (
    ConcurrencyGauge,
    ScriptedAgent,
    ScriptedLLM,
    build_harness,
    make_tenant,
    phase,
    plan_json,
    text_input_request,
)

PARALLEL_PLAN = plan_json(
    phase("business_discovery", ["profile_collector"], goals=["business_profile"]),
    phase("compliance_analysis", ["entity_compliance"], goals=["compliance_roadmap"]),
)

SEQUENTIAL_PLAN = plan_json(
    phase("business_discovery", ["profile_collector"], parallelizable=False),
    phase("compliance_analysis", ["entity_compliance"], prerequisites=["business_discovery"]),
)


def _needs_ein() -> A2ATaskResult:
    return A2ATaskResult.needs_input([text_input_request("ein")], reason="EIN could not be found")


@pytest.mark.asyncio
async def test_parallel_round_completes_with_expected_entries() -> None:
    gauge = ConcurrencyGauge()
    agents = [
        ScriptedAgent("profile_collector", [A2ATaskResult.complete({"business": {"name": "Acme"}})], delay=0.05, gauge=gauge),
        ScriptedAgent("entity_compliance", [A2ATaskResult.complete({"obligations": ["annual_report"]})], delay=0.05, gauge=gauge),
        ScriptedAgent("ux_optimization"),
    ]
    harness = build_harness(agents, llm=ScriptedLLM([PARALLEL_PLAN]))
    context = await harness.create()

    result = await harness.container.orchestrator.orchestrate(context)

    operations = await harness.operations(context.context_id)
    assert result.status is ContextStatus.COMPLETE
    assert result.plan_source == "llm"
    assert gauge.max_active == 2
    assert operations[0] == "task_created"
    assert len(operations) == 7
    assert operations[1] == "execution_plan_created"
    assert operations.count("phase_started") == 2
    assert operations.count("phase_completed") == 2
    assert operations[-1] == "round_completed"

    state = await harness.state(context.context_id)
    assert state.completeness == 100
    assert state.data["business"] == {"name": "Acme"}
    assert state.data["obligations"] == ["annual_report"]
    assert harness.agents["ux_optimization"].calls == 0


@pytest.mark.asyncio
async def test_every_system_entry_carries_reasoning_and_ordered_sequences() -> None:
    harness = build_harness(llm=ScriptedLLM([SEQUENTIAL_PLAN]))
    context = await harness.create()

    await harness.container.orchestrator.orchestrate(context)
    entries = await harness.store.read(context.context_id)

    assert [entry.sequence_number for entry in entries] == list(range(1, len(entries) + 1))
    assert all(entry.reasoning for entry in entries if entry.actor.type is not ActorType.USER)
    assert entries[1].reasoning.startswith("Generated execution plan from task template business_onboarding")


@pytest.mark.asyncio
async def test_sequential_phase_receives_data_from_prerequisite() -> None:
    agents = [
        ScriptedAgent("profile_collector", [A2ATaskResult.complete({"business": {"state": "DE"}})]),
        ScriptedAgent("entity_compliance"),
        ScriptedAgent("ux_optimization"),
    ]
    harness = build_harness(agents, llm=ScriptedLLM([SEQUENTIAL_PLAN]))
    context = await harness.create(initial_input={"business": {"name": "Acme"}})

    await harness.container.orchestrator.orchestrate(context)

    task = harness.agents["entity_compliance"].tasks[0]
    assert task.input["data"]["business"] == {"name": "Acme", "state": "DE"}
    assert task.type == "phase:compliance_analysis"
    assert task.metadata["context_id"] == context.context_id


@pytest.mark.asyncio
async def test_needs_input_suspends_round_and_user_input_starts_a_new_one() -> None:
    agents = [
        ScriptedAgent("profile_collector", [_needs_ein(), A2ATaskResult.complete({"ein": "verified"})]),
        ScriptedAgent("entity_compliance"),
        ScriptedAgent("ux_optimization"),
    ]
    llm = ScriptedLLM([SEQUENTIAL_PLAN, SEQUENTIAL_PLAN])
    harness = build_harness(agents, llm=llm)
    context = await harness.create()
    orchestrator = harness.container.orchestrator

    first = await orchestrator.orchestrate(context)
    suspended = await harness.state(context.context_id)

    assert first.status is ContextStatus.NEEDS_INPUT
    assert first.pending_ui == 1
    assert suspended.pending_ui[0]["id"] == "ui_ein"
    assert suspended.pending_ui_batches == [["ui_ein"]]
    assert "ui_requests_created" in await harness.operations(context.context_id)
    assert harness.agents["entity_compliance"].calls == 0

    second = await orchestrator.submit_user_input(
        context.context_id,
        tenant=make_tenant(),
        data={"ein": "12-3456789"},
        responds_to=["ui_ein"],
    )

    assert second.status is ContextStatus.COMPLETE
    assert second.round == 2
    assert len(llm.requests) == 2
    final = await harness.state(context.context_id)
    assert final.pending_ui == []
    assert final.data["ein"] == "verified"
    user_entries = [entry for entry in await harness.store.read(context.context_id) if entry.actor.type is ActorType.USER]
    assert len(user_entries) == 1
    assert user_entries[0].actor.id == "user-1"


@pytest.mark.asyncio
async def test_unmatched_error_fails_round_and_keeps_prior_entries() -> None:
    agents = [
        ScriptedAgent("profile_collector"),
        ScriptedAgent("entity_compliance", [A2ATaskResult.failed("LOOKUP_FAILED", "registry offline")]),
        ScriptedAgent("ux_optimization"),
    ]
    harness = build_harness(agents, llm=ScriptedLLM([SEQUENTIAL_PLAN]))
    context = await harness.create()

    result = await harness.container.orchestrator.orchestrate(context)

    operations = await harness.operations(context.context_id)
    assert result.status is ContextStatus.ERROR
    assert result.error is not None
    assert result.error["code"] == "LOOKUP_FAILED"
    assert result.error["phase_id"] == "compliance_analysis"
    assert operations[-1] == "round_failed"
    assert operations.count("phase_completed") == 2
    assert "fallback_applied" not in operations
    state = await harness.state(context.context_id)
    assert state.status is ContextStatus.ERROR
    assert state.completed_phases == ["business_discovery"]


@pytest.mark.asyncio
async def test_retry_fallback_reruns_agent_and_records_decision() -> None:
    agents = [
        ScriptedAgent(
            "profile_collector",
            [A2ATaskResult.failed("AGENT_TIMEOUT", "Agent profile_collector timed out after 30s"), A2ATaskResult.complete()],
        ),
        ScriptedAgent("entity_compliance"),
        ScriptedAgent("ux_optimization"),
    ]
    harness = build_harness(agents, llm=ScriptedLLM([SEQUENTIAL_PLAN]))
    context = await harness.create()

    result = await harness.container.orchestrator.orchestrate(context)

    entries = await harness.store.read(context.context_id)
    fallbacks = [entry for entry in entries if entry.operation == "fallback_applied"]
    assert result.status is ContextStatus.COMPLETE
    assert harness.agents["profile_collector"].calls == 2
    assert len(fallbacks) == 1
    assert fallbacks[0].data["decision"] == "retry"
    assert fallbacks[0].data["action"] == "retry_with_extended_timeout"
    assert fallbacks[0].reasoning.startswith("fallback applied: retry_with_extended_timeout")
    discovery = next(
        entry for entry in entries if entry.operation == "phase_completed" and entry.data["phase_id"] == "business_discovery"
    )
    assert discovery.data["agents"]["profile_collector"]["attempts"] == 2
    first, second = harness.agents["profile_collector"].tasks
    assert "timeout_multiplier" not in first.metadata
    assert second.metadata["timeout_multiplier"] == 2


@pytest.mark.asyncio
async def test_agent_reasoning_is_kept_in_phase_completed() -> None:
    agents = [
        ScriptedAgent(
            "profile_collector",
            [A2ATaskResult.complete({"business": {"state": "DE"}}, reasoning="Matched the state business registry")],
        ),
        ScriptedAgent("entity_compliance"),
        ScriptedAgent("ux_optimization"),
    ]
    harness = build_harness(agents, llm=ScriptedLLM([SEQUENTIAL_PLAN]))
    context = await harness.create()

    await harness.container.orchestrator.orchestrate(context)

    entries = await harness.store.read(context.context_id)
    discovery = next(
        entry for entry in entries if entry.operation == "phase_completed" and entry.data["phase_id"] == "business_discovery"
    )
    assert discovery.data["agents"]["profile_collector"]["reasoning"] == "Matched the state business registry"
    assert "Matched the state business registry" in (discovery.reasoning or "")
    assert discovery.actor.type is ActorType.AGENT
    assert discovery.actor.id == "profile_collector"
    assert discovery.actor.version == "1.0.0"


@pytest.mark.asyncio
async def test_exhausted_retries_escalate_to_user() -> None:
    agents = [
        ScriptedAgent("profile_collector", [A2ATaskResult.failed("AGENT_TIMEOUT", "timed out")]),
        ScriptedAgent("entity_compliance"),
        ScriptedAgent("ux_optimization"),
    ]
    harness = build_harness(agents, llm=ScriptedLLM([SEQUENTIAL_PLAN]))
    context = await harness.create()

    result = await harness.container.orchestrator.orchestrate(context)

    entries = await harness.store.read(context.context_id)
    decisions = [entry.data["decision"] for entry in entries if entry.operation == "fallback_applied"]
    assert harness.agents["profile_collector"].calls == 3
    assert decisions == ["retry", "retry", "escalate"]
    assert result.status is ContextStatus.NEEDS_INPUT
    assert entries[-1].operation == "round_needs_input"
    assert entries[-1].data["escalations"][0]["agent_role"] == "profile_collector"
    assert harness.agents["entity_compliance"].calls == 0


@pytest.mark.asyncio
async def test_non_retry_strategy_escalates_without_retrying() -> None:
    agents = [
        ScriptedAgent("profile_collector", [A2ATaskResult.failed("LOOKUP_FAILED", "Business not found")]),
        ScriptedAgent("entity_compliance"),
        ScriptedAgent("ux_optimization"),
    ]
    harness = build_harness(agents, llm=ScriptedLLM([SEQUENTIAL_PLAN]))
    context = await harness.create()

    result = await harness.container.orchestrator.orchestrate(context)

    state = await harness.state(context.context_id)
    assert result.status is ContextStatus.NEEDS_INPUT
    assert harness.agents["profile_collector"].calls == 1
    assert state.escalations == [
        {"phase_id": "business_discovery", "agent_role": "profile_collector", "action": "request_manual_entry"}
    ]


@pytest.mark.asyncio
async def test_orchestrate_is_idempotent_for_finished_rounds() -> None:
    llm = ScriptedLLM([SEQUENTIAL_PLAN])
    harness = build_harness(llm=llm)
    context = await harness.create()
    orchestrator = harness.container.orchestrator

    await orchestrator.orchestrate(context)
    count = len(await harness.operations(context.context_id))
    repeat = await orchestrator.orchestrate(context)

    assert repeat.skipped is True
    assert repeat.status is ContextStatus.COMPLETE
    assert len(await harness.operations(context.context_id)) == count
    assert len(llm.requests) == 1


@pytest.mark.asyncio
async def test_concurrent_orchestrate_calls_run_one_round() -> None:
    llm = ScriptedLLM([SEQUENTIAL_PLAN])
    harness = build_harness(llm=llm)
    context = await harness.create()
    orchestrator = harness.container.orchestrator

    results = await asyncio.gather(orchestrator.orchestrate(context), orchestrator.orchestrate(context))

    assert sorted(result.skipped for result in results) == [False, True]
    assert (await harness.operations(context.context_id)).count("execution_plan_created") == 1


@pytest.mark.asyncio
async def test_user_input_is_rejected_unless_context_needs_input() -> None:
    harness = build_harness(llm=ScriptedLLM([SEQUENTIAL_PLAN]))
    context = await harness.create()
    await harness.container.orchestrator.orchestrate(context)

    with pytest.raises(InvalidRoundTransition):
        await harness.container.orchestrator.submit_user_input(
            context.context_id, tenant=make_tenant(), data={"ein": "1"}
        )


@pytest.mark.asyncio
async def test_planner_outage_uses_template_default_plan() -> None:
    harness = build_harness(llm=ScriptedLLM([LLMUnavailableError("connection refused")]))
    context = await harness.create()

    result = await harness.container.orchestrator.orchestrate(context)

    entries = await harness.store.read(context.context_id)
    assert result.status is ContextStatus.COMPLETE
    assert result.plan_source == "template_default"
    assert entries[1].data["source"] == "template_default"
    assert "template default" in entries[1].reasoning


@pytest.mark.asyncio
async def test_denied_agent_fails_round_with_tenant_error() -> None:
    harness = build_harness(llm=ScriptedLLM([SEQUENTIAL_PLAN]))
    context = await harness.create(tenant=make_tenant(allowed=("profile_collector",)))

    result = await harness.container.orchestrator.orchestrate(context)

    assert result.status is ContextStatus.ERROR
    assert result.error is not None
    assert result.error["code"] == "TENANT_ACCESS_DENIED"
    assert harness.agents["entity_compliance"].calls == 0
    assert harness.data.issued == 1


@pytest.mark.asyncio
async def test_invalid_ui_request_fails_the_phase() -> None:
    from compliflow.schemas.ui import UIRequest

    bad = A2ATaskResult.needs_input([UIRequest(request_id="docs", template_type="document_upload")])
    agents = [
        ScriptedAgent("profile_collector", [bad]),
        ScriptedAgent("entity_compliance"),
        ScriptedAgent("ux_optimization"),
    ]
    harness = build_harness(agents, llm=ScriptedLLM([SEQUENTIAL_PLAN]))
    context = await harness.create()

    result = await harness.container.orchestrator.orchestrate(context)

    assert result.status is ContextStatus.ERROR
    assert result.error is not None
    assert result.error["code"] == "UI_INTERPRETATION_ERROR"
    assert "ui_requests_created" not in await harness.operations(context.context_id)


@pytest.mark.asyncio
async def test_tracker_releases_context_after_round() -> None:
    harness = build_harness(llm=ScriptedLLM([SEQUENTIAL_PLAN]))
    context = await harness.create()

    await harness.container.orchestrator.orchestrate(context)

    assert harness.container.tracker.is_tracking(context.context_id) is False
