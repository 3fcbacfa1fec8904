from __future__ import annotations

from compliflow.orchestration.projection import deep_merge, diff_states, project_at_sequence, project_state
from compliflow.schemas.a2a import TenantIdentity
from compliflow.schemas.context import Actor, ContextEntry, ContextStatus
from compliflow.schemas.operations import (
    ExecutionPlanCreated,
    PhaseCompleted,
    PhaseStarted,
    RoundCompleted,
    RoundNeedsInput,
    TaskCreated,
    UIRequestsCreated,
    UserInputReceived,
)


def _history() -> list[ContextEntry]:
    payloads = [
        TaskCreated(
            template_id="business_onboarding",
            tenant=TenantIdentity(tenant_id="tenant-a"),
            template_snapshot={},
            initial_input={"business": {"name": "Acme"}},
        ),
        ExecutionPlanCreated(
            round=1,
            source="llm",
            phases=[{"id": "discovery"}, {"id": "analysis"}],
        ),
        PhaseStarted(round=1, phase_id="discovery"),
        PhaseCompleted(round=1, phase_id="discovery", outcome="complete", data={"business": {"state": "DE"}}),
        PhaseStarted(round=1, phase_id="analysis"),
        UIRequestsCreated(round=1, phase_id="analysis", elements=[{"id": "ui_ein"}], batches=[["ui_ein"]]),
        PhaseCompleted(round=1, phase_id="analysis", outcome="needs_input"),
        RoundNeedsInput(round=1, phase_ids=["analysis"]),
    ]
    return [
        ContextEntry.record("ctx-1", payload, actor=Actor.system(), reasoning="step").sequenced(index)
        for index, payload in enumerate(payloads, start=1)
    ]


def test_projection_folds_history_into_state() -> None:
    state = project_state(_history())

    assert state.status is ContextStatus.NEEDS_INPUT
    assert state.phase == "analysis"
    assert state.round == 1
    assert state.completed_phases == ["discovery"]
    assert state.data == {"business": {"name": "Acme", "state": "DE"}}
    assert state.pending_ui == [{"id": "ui_ein"}]
    assert state.completeness == 50
    assert state.last_sequence == 8
    assert state.entry_count == 8


def test_projection_is_deterministic_regardless_of_input_order() -> None:
    history = _history()

    assert project_state(history) == project_state(list(reversed(history)))
    assert project_state(history) == project_state(history)


def test_unknown_operation_merges_data_without_touching_status() -> None:
    history = _history()[:2]
    history.append(
        ContextEntry(
            context_id="ctx-1",
            actor=Actor.agent("profile_collector"),
            operation="business_verified",
            data={"verified": True},
            reasoning="registry match",
            sequence_number=3,
        )
    )

    state = project_state(history)

    assert state.data["verified"] is True
    assert state.status is ContextStatus.IN_PROGRESS
    assert state.phase == "planning"


def test_user_input_clears_pending_ui_and_round_completion_sets_complete() -> None:
    history = _history()
    history.append(
        ContextEntry.record(
            "ctx-1",
            UserInputReceived(data={"ein": "12-3456789"}, responds_to=["ein"]),
            actor=Actor.user("user-1"),
            reasoning=None,
        ).sequenced(9)
    )
    after_input = project_state(history)
    history.append(
        ContextEntry.record(
            "ctx-1", RoundCompleted(round=2, completed_phases=["discovery", "analysis"]), actor=Actor.system(), reasoning="done"
        ).sequenced(10)
    )

    assert after_input.pending_ui == []
    assert after_input.data["ein"] == "12-3456789"
    assert after_input.status is ContextStatus.IN_PROGRESS
    assert project_state(history).status is ContextStatus.COMPLETE
    assert project_state(history).completeness == 100


def test_project_at_sequence_and_diff() -> None:
    history = _history()

    before = project_at_sequence(history, 2)
    after = project_at_sequence(history, 4)
    changes = diff_states(before, after)

    assert before.completed_phases == []
    assert changes["completed_phases"] == {"before": [], "after": ["discovery"]}
    assert changes["data"]["business"]["after"] == {"name": "Acme", "state": "DE"}
    assert "round" not in changes


def test_deep_merge_keeps_nested_keys() -> None:
    merged = deep_merge({"a": {"b": 1, "c": 2}}, {"a": {"c": 3}, "d": 4})

    assert merged == {"a": {"b": 1, "c": 3}, "d": 4}


def test_correction_supersedes_without_editing_earlier_entry() -> None:
    history = _history()
    original = history[3]
    history.append(
        ContextEntry.record(
            "ctx-1",
            UserInputReceived(data={"business": {"state": "NY"}}, responds_to=["business.state"]),
            actor=Actor.user("user-1"),
            reasoning=None,
            corrects=original.entry_id,
        ).sequenced(9)
    )

    state = project_state(history)

    assert state.corrected_entries == [original.entry_id]
    assert state.data["business"] == {"name": "Acme", "state": "NY"}
    assert history[3].data == original.data
    assert project_at_sequence(history, 8).corrected_entries == []
