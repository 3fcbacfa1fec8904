from __future__ import annotations

import pytest
from prometheus_client import REGISTRY

from compliflow.core.metrics import increment_event_append, mark_round_completed, mark_round_started, observe_agent_execution


def test_agent_execution_is_counted_per_status() -> None:
    labels = {"agent": "profile_collector", "status": "complete"}
    before = REGISTRY.get_sample_value("compliflow_agent_executions_total", labels) or 0.0

    observe_agent_execution(agent="profile_collector", status="complete", latency=0.2)

    assert REGISTRY.get_sample_value("compliflow_agent_executions_total", labels) == pytest.approx(before + 1)


def test_active_rounds_gauge_returns_to_previous_value() -> None:
    before = REGISTRY.get_sample_value("compliflow_orchestration_rounds_active") or 0.0

    mark_round_started()
    during = REGISTRY.get_sample_value("compliflow_orchestration_rounds_active")
    mark_round_completed(outcome="error", latency=0.1)

    assert during == pytest.approx(before + 1)
    assert REGISTRY.get_sample_value("compliflow_orchestration_rounds_active") == pytest.approx(before)


def test_event_append_outcomes_are_labelled() -> None:
    labels = {"outcome": "retried"}
    before = REGISTRY.get_sample_value("compliflow_event_appends_total", labels) or 0.0

    increment_event_append(outcome="retried")

    assert REGISTRY.get_sample_value("compliflow_event_appends_total", labels) == pytest.approx(before + 1)
