from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from time import perf_counter
from typing import Any, Sequence

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from ..agents.base import AgentRegistry
from ..core.config import OrchestrationSettings, UISettings
from ..core.errors import (
    CompliflowError,
    EventAppendError,
    InterpretationError,
    InvalidRoundTransition,
    PlanningValidationError,
)
from ..core.logging import bind_context, get_logger, unbind_context
from ..core.metrics import (
    increment_fallback_decision,
    increment_phase_outcome,
    mark_round_completed,
    mark_round_started,
)
from ..schemas.a2a import A2ATask, A2ATaskResult, TaskError, TaskResultStatus, TenantContext
from ..schemas.context import Actor, ContextEntry, ContextStatus, EntryTrigger, TaskContext
from ..schemas.operations import (
    AgentOutcome,
    ExecutionPlanCreated,
    FallbackApplied,
    OperationPayload,
    PhaseCompleted,
    PhaseOutcome,
    PhaseStarted,
    RoundCompleted,
    RoundFailed,
    RoundNeedsInput,
    UIRequestsCreated,
    UserInputReceived,
)
from ..schemas.ui import UIRequest
from ..services.telemetry import TaskPerformanceTracker
from ..ui.disclosure import plan_disclosure
from ..ui.interpreter import UIInterpreter
from ..utils.locks import KeyedLocks
from .fallback import FallbackPolicy
from .planner import PhasePlanner
from .planner_contract import Phase, PhaseGraph, PhaseGraphGatekeeper
from .projection import deep_merge
from .recorder import EntryRecorder
from .repository import ContextRepository
from .scheduler import PhaseReport, PhaseScheduler

logger = get_logger(name=__name__)

_ROUND_TERMINALS = frozenset({"round_completed", "round_needs_input", "round_failed"})


@dataclass(slots=True)
class RoundResult:
    context_id: str
    round: int
    status: ContextStatus
    plan_source: str | None = None
    completed_phases: list[str] = field(default_factory=list)
    pending_ui: int = 0
    error: dict[str, Any] | None = None
    skipped: bool = False


@dataclass(slots=True)
class _AgentRun:
    role: str
    result: A2ATaskResult
    attempts: int = 1


class _RetryAgent(Exception):
    def __init__(self, result: A2ATaskResult) -> None:
        super().__init__(result.error.message if result.error else "retry")
        self.result = result


def _has_unconsumed_input(context: TaskContext) -> bool:
    for entry in reversed(context.history):
        if entry.operation in _ROUND_TERMINALS:
            return False
        if entry.operation == UserInputReceived.operation:
            return True
    return False


def _phase_outcome(runs: Sequence[_AgentRun]) -> PhaseOutcome:
    statuses = {run.result.status for run in runs}
    if TaskResultStatus.ERROR in statuses:
        return "error"
    if TaskResultStatus.ESCALATED in statuses:
        return "escalated"
    if TaskResultStatus.PENDING_USER_INPUT in statuses:
        return "needs_input"
    return "complete"


class Orchestrator:
    """Drives orchestration rounds for task contexts.

    A round plans against the current context, executes the phase graph and ends
    with exactly one of ``round_completed``, ``round_needs_input`` or
    ``round_failed``. Rounds of the same context never overlap.
    """

    def __init__(
        self,
        *,
        repository: ContextRepository,
        recorder: EntryRecorder,
        planner: PhasePlanner,
        agents: AgentRegistry,
        interpreter: UIInterpreter,
        settings: OrchestrationSettings,
        ui_settings: UISettings,
        tracker: TaskPerformanceTracker | None = None,
    ) -> None:
        self._repository = repository
        self._recorder = recorder
        self._planner = planner
        self._agents = agents
        self._interpreter = interpreter
        self._settings = settings
        self._ui_settings = ui_settings
        self._tracker = tracker
        self._scheduler = PhaseScheduler(settings)
        self._gatekeeper = PhaseGraphGatekeeper()
        self._locks = KeyedLocks()
        self._actor = Actor.system("orchestrator")

    async def orchestrate(self, context: TaskContext) -> RoundResult:
        async with self._locks.lock(context.context_id):
            return await self._run_round(await self._repository.refresh(context))

    async def submit_user_input(
        self,
        context_id: str,
        *,
        tenant: TenantContext,
        data: dict[str, Any],
        responds_to: Sequence[str] = (),
        corrects: str | None = None,
    ) -> RoundResult:
        async with self._locks.lock(context_id):
            context = await self._repository.load(context_id, tenant=tenant)
            status = context.current_state.status
            if status is not ContextStatus.NEEDS_INPUT:
                raise InvalidRoundTransition(
                    f"Context is {status.value}; input is only accepted while it needs input",
                    details={"status": status.value},
                )
            await self._recorder.append(
                ContextEntry.record(
                    context_id,
                    UserInputReceived(data=data, responds_to=list(responds_to)),
                    actor=Actor.user(tenant.user_id or "anonymous"),
                    reasoning=None,
                    trigger=EntryTrigger(source="user", request_id=responds_to[0] if responds_to else None),
                    corrects=corrects,
                )
            )
            return await self._run_round(await self._repository.refresh(context))

    async def _run_round(self, context: TaskContext) -> RoundResult:
        state = context.current_state
        context_id = context.context_id
        if state.status in {ContextStatus.COMPLETE, ContextStatus.NEEDS_INPUT, ContextStatus.ERROR} and not _has_unconsumed_input(context):
            logger.info("orchestration_round_skipped", context_id=context_id, status=state.status.value)
            return RoundResult(
                context_id=context_id,
                round=state.round,
                status=state.status,
                completed_phases=list(state.completed_phases),
                pending_ui=len(state.pending_ui),
                error=state.last_error,
                skipped=True,
            )

        round_number = state.round + 1
        bind_context(context_id=context_id, round=round_number)
        mark_round_started()
        started = perf_counter()
        if self._tracker is not None:
            self._tracker.start_task(context_id)
        outcome = "error"
        try:
            result = await self._execute_round(context, round_number)
            outcome = result.status.value
            return result
        except EventAppendError as exc:
            logger.error("orchestration_round_append_failed", context_id=context_id, error=exc.message)
            await self._append(
                context_id,
                RoundFailed(round=round_number, error=exc.to_payload()),
                f"Round {round_number} stopped: the event log could not record its progress",
            )
            return RoundResult(context_id=context_id, round=round_number, status=ContextStatus.ERROR, error=exc.to_payload())
        finally:
            mark_round_completed(outcome=outcome, latency=perf_counter() - started)
            unbind_context("context_id", "round")
            if self._tracker is not None:
                self._tracker.complete_task(context_id)

    async def _execute_round(self, context: TaskContext, round_number: int) -> RoundResult:
        context_id = context.context_id
        template = context.template_snapshot
        roster = self._agents.roster()

        try:
            plan = await self._measure(context_id, "llm_call", "phase_planner", self._planner.plan(template, context, roster))
            graph = self._gatekeeper.check(plan.graph, roster=self._agents.roles())
        except PlanningValidationError as exc:
            await self._append(
                context_id,
                RoundFailed(round=round_number, error=exc.to_payload()),
                "No valid execution plan could be produced for the template goals",
            )
            return RoundResult(context_id=context_id, round=round_number, status=ContextStatus.ERROR, error=exc.to_payload())

        reasoning = f"Generated execution plan from task template {template.id}"
        if plan.source != "llm":
            reasoning += f" ({plan.source.replace('_', ' ')} after {len(plan.validation_errors)} validation error(s))"
        await self._append(
            context_id,
            ExecutionPlanCreated(
                round=round_number,
                source=plan.source,
                phases=graph.to_entry_data(),
                attempts=plan.attempts,
                validation_errors=plan.validation_errors,
            ),
            reasoning,
        )

        already_done = [phase_id for phase_id in graph.phase_ids if phase_id in context.current_state.completed_phases]
        round_data: dict[str, Any] = dict(context.current_state.data)
        policy = FallbackPolicy(template.fallback_strategies, default_max_attempts=self._settings.max_phase_attempts)

        async def execute(phase: Phase) -> PhaseReport:
            report = await self._run_phase(context, round_number, phase, policy, graph, round_data)
            if report.outcome == "complete":
                round_data.update(deep_merge(round_data, report.data))
            return report

        dispatch = await self._scheduler.dispatch(graph, executor=execute, satisfied=already_done)
        completed = already_done + [report.phase.id for report in dispatch.reports if report.outcome == "complete"]

        failed = next((report for report in dispatch.reports if report.outcome == "error"), None)
        if failed is not None:
            error = (failed.error or TaskError(code="PHASE_FAILED", message="Phase failed")).model_dump()
            error["phase_id"] = failed.phase.id
            await self._append(
                context_id,
                RoundFailed(round=round_number, phase_id=failed.phase.id, error=error),
                f"Phase {failed.phase.id} failed with {error['code']} and no fallback strategy applies; "
                f"{len(dispatch.not_started)} phase(s) were not started",
            )
            return RoundResult(
                context_id=context_id,
                round=round_number,
                status=ContextStatus.ERROR,
                plan_source=plan.source,
                completed_phases=completed,
                error=error,
            )

        waiting = [report for report in dispatch.reports if report.outcome in {"needs_input", "escalated"}]
        if waiting:
            escalations = [item for report in waiting for item in report.escalations]
            await self._append(
                context_id,
                RoundNeedsInput(
                    round=round_number,
                    phase_ids=[report.phase.id for report in waiting],
                    escalations=escalations,
                ),
                "Round suspended until the user responds: "
                + ", ".join(f"{report.phase.id} ({report.outcome})" for report in waiting),
            )
            refreshed = await self._repository.refresh(context)
            return RoundResult(
                context_id=context_id,
                round=round_number,
                status=ContextStatus.NEEDS_INPUT,
                plan_source=plan.source,
                completed_phases=completed,
                pending_ui=len(refreshed.current_state.pending_ui),
            )

        await self._append(
            context_id,
            RoundCompleted(round=round_number, completed_phases=completed),
            f"All {len(graph.phases)} planned phase(s) completed",
        )
        return RoundResult(
            context_id=context_id,
            round=round_number,
            status=ContextStatus.COMPLETE,
            plan_source=plan.source,
            completed_phases=completed,
        )

    async def _run_phase(
        self,
        context: TaskContext,
        round_number: int,
        phase: Phase,
        policy: FallbackPolicy,
        graph: PhaseGraph,
        round_data: dict[str, Any],
    ) -> PhaseReport:
        context_id = context.context_id
        prerequisites = ", ".join(phase.prerequisites) or "none"
        await self._append(
            context_id,
            PhaseStarted(round=round_number, phase_id=phase.id, phase_name=phase.name, agents=list(phase.required_agents)),
            f"Starting phase {phase.id}; prerequisites satisfied: {prerequisites}",
        )

        snapshot = dict(round_data)
        runs = await asyncio.gather(
            *(self._run_agent(context, round_number, phase, role, policy, snapshot) for role in phase.required_agents)
        )
        outcome = _phase_outcome(runs)
        error = next((run.result.error for run in runs if run.result.status is TaskResultStatus.ERROR), None)
        escalations = [
            {
                "phase_id": phase.id,
                "agent_role": run.role,
                "error": run.result.error.model_dump() if run.result.error else None,
            }
            for run in runs
            if run.result.status is TaskResultStatus.ESCALATED
        ]

        data: dict[str, Any] = {}
        for run in runs:
            if run.result.status is not TaskResultStatus.ERROR and run.result.result:
                data = deep_merge(data, run.result.result)

        ui_requests: list[UIRequest] = [
            request
            for run in runs
            if run.result.ui_augmentation is not None
            for request in run.result.ui_augmentation.requests
        ]
        if ui_requests and outcome != "error":
            try:
                disclosure = plan_disclosure(
                    ui_requests,
                    self._interpreter,
                    batch_size=self._ui_settings.disclosure_batch_size,
                    context_id=context_id,
                )
            except InterpretationError as exc:
                outcome = "error"
                error = TaskError(code=exc.code, message=exc.message, details=exc.details)
            else:
                await self._append(
                    context_id,
                    UIRequestsCreated(
                        round=round_number,
                        phase_id=phase.id,
                        elements=[element.model_dump(mode="json") for element in disclosure.elements],
                        batches=disclosure.batches,
                        summary=disclosure.summary(),
                    ),
                    f"Interpreted {len(disclosure.elements)} UI request(s) from phase {phase.id} "
                    f"into {len(disclosure.batches)} disclosure batch(es)",
                )

        await self._append(
            context_id,
            PhaseCompleted(
                round=round_number,
                phase_id=phase.id,
                outcome=outcome,
                agents={
                    run.role: AgentOutcome(
                        status=run.result.status.value,
                        result=run.result.result,
                        error=run.result.error.model_dump() if run.result.error else None,
                        attempts=run.attempts,
                        reasoning=run.result.reasoning,
                    )
                    for run in runs
                },
                data=data,
            ),
            self._phase_reasoning(phase, outcome, runs),
            actor=self._phase_actor(runs),
        )
        increment_phase_outcome(outcome=outcome)
        return PhaseReport(phase=phase, outcome=outcome, data=data, error=error, escalations=escalations)

    async def _run_agent(
        self,
        context: TaskContext,
        round_number: int,
        phase: Phase,
        role: str,
        policy: FallbackPolicy,
        data: dict[str, Any],
    ) -> _AgentRun:
        agent = self._agents.get(role)
        if agent is None:
            return _AgentRun(role, A2ATaskResult.failed("AGENT_NOT_AVAILABLE", f"Agent {role} is not registered"))

        context_id = context.context_id
        attempts = 0
        timeout_multiplier = 1
        wait = wait_random_exponential(
            multiplier=self._settings.retry_backoff_seconds,
            max=self._settings.retry_max_backoff_seconds,
        )
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(3),
            wait=wait,
            retry=retry_if_exception_type(_RetryAgent),
            reraise=True,
        ):
            with attempt:
                attempts = attempt.retry_state.attempt_number
                metadata: dict[str, Any] = {"context_id": context_id, "phase_id": phase.id, "attempt": attempts}
                if timeout_multiplier > 1:
                    metadata["timeout_multiplier"] = timeout_multiplier
                task = A2ATask(
                    type=f"phase:{phase.id}",
                    input={
                        "phase_id": phase.id,
                        "goals": list(phase.goals),
                        "data": data,
                        "round": round_number,
                    },
                    tenant_context=context.tenant,
                    metadata=metadata,
                )
                if self._tracker is not None:
                    self._tracker.record_event(context_id, "agent_start", role, metadata={"agent": role, "phase_id": phase.id})
                result = await self._measure(
                    context_id,
                    "agent_complete",
                    role,
                    agent.execute_task(task),
                    agent=role,
                    phase_id=phase.id,
                )
                if result.status is not TaskResultStatus.ERROR or result.error is None:
                    return _AgentRun(role, result, attempts)

                decision = policy.decide(result.error, attempt=attempts)
                if decision is None:
                    return _AgentRun(role, result, attempts)

                increment_fallback_decision(decision=decision.decision)
                await self._append(
                    context_id,
                    FallbackApplied(
                        round=round_number,
                        phase_id=phase.id,
                        agent_role=role,
                        trigger=decision.strategy.trigger,
                        action=decision.strategy.action,
                        message=decision.strategy.message,
                        decision=decision.decision,
                        attempt=attempts,
                    ),
                    self._fallback_reasoning(role, decision.strategy.action, decision.decision, attempts, decision.exhausted),
                )
                if decision.decision == "retry":
                    if "extended_timeout" in decision.strategy.action:
                        timeout_multiplier = attempts + 1
                    raise _RetryAgent(result)
                escalated = A2ATaskResult(
                    status=TaskResultStatus.ESCALATED,
                    result=result.result,
                    error=result.error,
                    reasoning=decision.strategy.message or None,
                )
                return _AgentRun(role, escalated, attempts)
        raise RuntimeError("agent retry loop ended without a result")  # pragma: no cover

    async def _measure(self, context_id: str, kind: str, name: str, awaitable: Any, **metadata: Any) -> Any:
        if self._tracker is None:
            return await awaitable
        async with self._tracker.measure(context_id, kind, name, **metadata):  # type: ignore[arg-type]
            return await awaitable

    def _phase_actor(self, runs: Sequence[_AgentRun]) -> Actor:
        # A single-agent phase is that agent's output; a fan-in is the orchestrator's.
        if len(runs) != 1:
            return self._actor
        agent = self._agents.get(runs[0].role)
        return Actor.agent(runs[0].role, version=agent.capability.version if agent is not None else None)

    async def _append(
        self,
        context_id: str,
        payload: OperationPayload,
        reasoning: str,
        *,
        actor: Actor | None = None,
    ) -> ContextEntry:
        return await self._recorder.append(
            ContextEntry.record(
                context_id,
                payload,
                actor=actor or self._actor,
                reasoning=reasoning,
                trigger=EntryTrigger(source="orchestrator"),
            )
        )

    @staticmethod
    def _phase_reasoning(phase: Phase, outcome: PhaseOutcome, runs: Sequence[_AgentRun]) -> str:
        summary = ", ".join(f"{run.role}={run.result.status.value}" for run in runs)
        if outcome == "complete":
            text = f"Phase {phase.id} complete: all agents finished ({summary})"
        else:
            text = f"Phase {phase.id} ended as {outcome} ({summary})"
        explained = [f"{run.role}: {run.result.reasoning}" for run in runs if run.result.reasoning]
        if explained:
            text += "; " + "; ".join(explained)
        return text

    @staticmethod
    def _fallback_reasoning(role: str, action: str, decision: str, attempt: int, exhausted: bool) -> str:
        if decision == "retry":
            return f"fallback applied: {action} for {role} after attempt {attempt}"
        if exhausted:
            return f"fallback applied: {action} exhausted after {attempt} attempt(s); escalating {role}"
        return f"fallback applied: {action}; escalating {role}"


__all__ = ["Orchestrator", "RoundResult"]
