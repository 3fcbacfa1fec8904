from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

AGENT_LATENCY_SECONDS = Histogram(
    "compliflow_agent_execution_latency_seconds",
    "Latency for each agent execution",
    labelnames=("agent",),
)

AGENT_EXECUTIONS_TOTAL = Counter(
    "compliflow_agent_executions_total",
    "Agent executions grouped by terminal status",
    labelnames=("agent", "status"),
)

AGENT_AUDIT_FAILURES_TOTAL = Counter(
    "compliflow_agent_audit_failures_total",
    "Audit records that could not be delivered to the audit sink",
    labelnames=("action",),
)

ROUNDS_TOTAL = Counter(
    "compliflow_orchestration_rounds_total",
    "Orchestration rounds grouped by outcome",
    labelnames=("outcome",),
)

ROUND_LATENCY_SECONDS = Histogram(
    "compliflow_orchestration_round_latency_seconds",
    "End-to-end orchestration round runtime",
    buckets=(0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)

ROUNDS_ACTIVE = Gauge(
    "compliflow_orchestration_rounds_active",
    "Orchestration rounds in flight",
)

PHASES_TOTAL = Counter(
    "compliflow_phases_total",
    "Executed phases grouped by outcome",
    labelnames=("outcome",),
)

FALLBACK_DECISIONS_TOTAL = Counter(
    "compliflow_fallback_decisions_total",
    "Fallback strategy decisions grouped by action class",
    labelnames=("decision",),
)

PLANNER_OUTCOMES_TOTAL = Counter(
    "compliflow_planner_outcomes_total",
    "Phase planner outcomes grouped by plan source and status",
    labelnames=("source", "status"),
)

PLANNER_PHASES = Histogram(
    "compliflow_planner_plan_phases",
    "Number of phases produced per accepted phase graph",
    labelnames=("source",),
    buckets=(0, 1, 2, 3, 4, 5, 8, 13, 21),
)

PLAN_VALIDATION_FAILURES_TOTAL = Counter(
    "compliflow_plan_validation_failures_total",
    "Phase graphs rejected by the validity gate",
    labelnames=("reason",),
)

EVENT_APPENDS_TOTAL = Counter(
    "compliflow_event_appends_total",
    "Context entry appends grouped by outcome",
    labelnames=("outcome",),
)

UI_INTERPRETATIONS_TOTAL = Counter(
    "compliflow_ui_interpretations_total",
    "UI request interpretations grouped by template and outcome",
    labelnames=("template_type", "outcome"),
)

TASK_OPERATION_LATENCY_SECONDS = Histogram(
    "compliflow_task_operation_latency_seconds",
    "Latency of tracked task sub-operations",
    labelnames=("kind",),
)


def observe_agent_execution(*, agent: str, status: str, latency: float) -> None:
    AGENT_EXECUTIONS_TOTAL.labels(agent=agent, status=status).inc()
    AGENT_LATENCY_SECONDS.labels(agent=agent).observe(max(0.0, latency))


def increment_audit_failure(*, action: str) -> None:
    AGENT_AUDIT_FAILURES_TOTAL.labels(action=action).inc()


def mark_round_started() -> None:
    ROUNDS_ACTIVE.inc()


def mark_round_completed(*, outcome: str, latency: float) -> None:
    ROUNDS_ACTIVE.dec()
    ROUNDS_TOTAL.labels(outcome=outcome).inc()
    ROUND_LATENCY_SECONDS.observe(max(0.0, latency))


def increment_phase_outcome(*, outcome: str) -> None:
    PHASES_TOTAL.labels(outcome=outcome).inc()


def increment_fallback_decision(*, decision: str) -> None:
    FALLBACK_DECISIONS_TOTAL.labels(decision=decision).inc()


def record_plan_metrics(*, source: str, status: str, phases: int | None = None) -> None:
    PLANNER_OUTCOMES_TOTAL.labels(source=source, status=status).inc()
    if phases is not None:
        PLANNER_PHASES.labels(source=source).observe(max(0, phases))


def increment_plan_validation_failure(*, reason: str) -> None:
    PLAN_VALIDATION_FAILURES_TOTAL.labels(reason=reason or "unknown").inc()


def increment_event_append(*, outcome: str) -> None:
    EVENT_APPENDS_TOTAL.labels(outcome=outcome).inc()


def increment_ui_interpretation(*, template_type: str, outcome: str) -> None:
    UI_INTERPRETATIONS_TOTAL.labels(template_type=template_type or "unknown", outcome=outcome).inc()


def observe_task_operation(*, kind: str, latency: float) -> None:
    TASK_OPERATION_LATENCY_SECONDS.labels(kind=kind).observe(max(0.0, latency))
