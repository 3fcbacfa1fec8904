from __future__ import annotations

import pytest

from compliflow.core.config import TelemetrySettings
from compliflow.services.telemetry import TaskPerformanceTracker


def test_tracker_evicts_oldest_context() -> None:
    tracker = TaskPerformanceTracker(TelemetrySettings(max_tracked_tasks=2))

    for context_id in ("ctx-1", "ctx-2", "ctx-3"):
        tracker.start_task(context_id)

    assert tracker.is_tracking("ctx-1") is False
    assert tracker.is_tracking("ctx-2") is True
    assert tracker.is_tracking("ctx-3") is True


def test_events_for_untracked_context_are_ignored() -> None:
    tracker = TaskPerformanceTracker(TelemetrySettings())

    tracker.record_event("ghost", "custom", "noop")

    assert tracker.timeline("ghost") == []
    assert tracker.complete_task("ghost") is None


@pytest.mark.asyncio
async def test_summary_breaks_down_agents_and_errors() -> None:
    tracker = TaskPerformanceTracker(TelemetrySettings())
    tracker.start_task("ctx-1")

    tracker.record_event("ctx-1", "agent_complete", "profile_collector", duration_ms=120.0, metadata={"agent": "profile_collector"})
    tracker.record_event("ctx-1", "agent_complete", "profile_collector", duration_ms=30.0, metadata={"agent": "profile_collector"})
    async with tracker.measure("ctx-1", "llm_call", "phase_planner"):
        pass
    with pytest.raises(RuntimeError):
        async with tracker.measure("ctx-1", "db_operation", "append", agent="entity_compliance"):
            raise RuntimeError("boom")

    timeline = tracker.timeline("ctx-1")
    summary = tracker.complete_task("ctx-1")

    assert [event.kind for event in timeline] == ["agent_complete", "agent_complete", "llm_call", "error"]
    assert summary is not None
    assert summary.agent_breakdown_ms["profile_collector"] == pytest.approx(150.0)
    assert "entity_compliance" in summary.agent_breakdown_ms
    assert summary.error_count == 1
    assert summary.event_counts["agent_complete"] == 2
    assert summary.slowest[0]["name"] == "profile_collector"
    assert tracker.is_tracking("ctx-1") is False


def test_restarting_a_context_resets_its_events() -> None:
    tracker = TaskPerformanceTracker(TelemetrySettings())
    tracker.start_task("ctx-1")
    tracker.record_event("ctx-1", "custom", "first")

    tracker.start_task("ctx-1")

    assert tracker.timeline("ctx-1") == []
