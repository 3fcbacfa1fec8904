"""Pure fold of a context's history into its current state.

The fold is deterministic: the same history always yields an equal ``CurrentState``.
Operations the projection does not recognise merge their data shallowly and leave
``status`` and ``phase`` alone.
"""

from __future__ import annotations

import copy
from typing import Any, Iterable, Mapping

from ..schemas.context import ContextEntry, ContextStatus, CurrentState
from ..schemas.operations import (
    ExecutionPlanCreated,
    FallbackApplied,
    PhaseCompleted,
    PhaseStarted,
    RoundCompleted,
    RoundFailed,
    RoundNeedsInput,
    StatusUpdated,
    TaskCreated,
    UIRequestsCreated,
    UnknownOperation,
    UserInputReceived,
)


def deep_merge(base: Mapping[str, Any], incoming: Mapping[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(dict(base))
    for key, value in incoming.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _completeness(state: CurrentState) -> int:
    if state.status is ContextStatus.COMPLETE:
        return 100
    if not state.planned_phases:
        return 0
    done = sum(1 for phase_id in state.planned_phases if phase_id in state.completed_phases)
    return min(99, int(done * 100 / len(state.planned_phases)))


def apply_entry(state: CurrentState, entry: ContextEntry) -> CurrentState:
    """Return the state after ``entry``. ``state`` itself is left untouched."""
    nxt = state.model_copy(deep=True)
    nxt.last_sequence = entry.sequence_number or nxt.last_sequence
    nxt.entry_count += 1
    if entry.corrects and entry.corrects not in nxt.corrected_entries:
        nxt.corrected_entries.append(entry.corrects)

    payload = entry.payload()
    if isinstance(payload, TaskCreated):
        nxt.status = ContextStatus.CREATED
        nxt.phase = "initialization"
        nxt.data = deep_merge(nxt.data, payload.initial_input)
    elif isinstance(payload, ExecutionPlanCreated):
        nxt.round = payload.round
        nxt.status = ContextStatus.IN_PROGRESS
        nxt.phase = "planning"
        nxt.planned_phases = [str(phase.get("id")) for phase in payload.phases]
        nxt.pending_ui = []
        nxt.pending_ui_batches = []
        nxt.escalations = []
        nxt.last_error = None
    elif isinstance(payload, PhaseStarted):
        nxt.status = ContextStatus.IN_PROGRESS
        nxt.phase = payload.phase_id
    elif isinstance(payload, PhaseCompleted):
        nxt.data = deep_merge(nxt.data, payload.data)
        if payload.outcome == "complete" and payload.phase_id not in nxt.completed_phases:
            nxt.completed_phases.append(payload.phase_id)
    elif isinstance(payload, UIRequestsCreated):
        nxt.pending_ui.extend(copy.deepcopy(payload.elements))
        nxt.pending_ui_batches.extend(copy.deepcopy(payload.batches))
    elif isinstance(payload, FallbackApplied):
        if payload.decision == "escalate":
            nxt.escalations.append(
                {"phase_id": payload.phase_id, "agent_role": payload.agent_role, "action": payload.action}
            )
    elif isinstance(payload, UserInputReceived):
        nxt.data = deep_merge(nxt.data, payload.data)
        nxt.pending_ui = []
        nxt.pending_ui_batches = []
        nxt.status = ContextStatus.IN_PROGRESS
    elif isinstance(payload, RoundCompleted):
        nxt.status = ContextStatus.COMPLETE
        nxt.phase = "completed"
    elif isinstance(payload, RoundNeedsInput):
        nxt.status = ContextStatus.NEEDS_INPUT
        nxt.phase = payload.phase_ids[0] if payload.phase_ids else nxt.phase
    elif isinstance(payload, RoundFailed):
        nxt.status = ContextStatus.ERROR
        nxt.last_error = copy.deepcopy(payload.error)
        if payload.phase_id:
            nxt.phase = payload.phase_id
    elif isinstance(payload, StatusUpdated):
        try:
            nxt.status = ContextStatus(payload.status)
        except ValueError:
            nxt.data = deep_merge(nxt.data, {"status_hint": payload.status})
        if payload.phase is not None:
            nxt.phase = payload.phase
    elif isinstance(payload, UnknownOperation):
        nxt.data.update(copy.deepcopy(payload.values))

    nxt.completeness = _completeness(nxt)
    return nxt


def project_state(history: Iterable[ContextEntry]) -> CurrentState:
    ordered = sorted(history, key=lambda entry: entry.sequence_number or 0)
    state = CurrentState()
    for entry in ordered:
        state = apply_entry(state, entry)
    return state


def project_at_sequence(history: Iterable[ContextEntry], sequence_number: int) -> CurrentState:
    """State as it was right after ``sequence_number`` was appended."""
    return project_state(entry for entry in history if (entry.sequence_number or 0) <= sequence_number)


def diff_states(before: CurrentState, after: CurrentState) -> dict[str, dict[str, Any]]:
    """Field-level changes between two projections, with ``data`` compared per key."""
    changes: dict[str, dict[str, Any]] = {}
    old = before.model_dump(mode="json")
    new = after.model_dump(mode="json")
    for field_name, new_value in new.items():
        if field_name == "data":
            continue
        if old.get(field_name) != new_value:
            changes[field_name] = {"before": old.get(field_name), "after": new_value}

    old_data, new_data = old.get("data", {}), new.get("data", {})
    data_changes: dict[str, Any] = {}
    for key in sorted(set(old_data) | set(new_data)):
        if old_data.get(key) != new_data.get(key):
            data_changes[key] = {"before": old_data.get(key), "after": new_data.get(key)}
    if data_changes:
        changes["data"] = data_changes
    return changes


__all__ = ["apply_entry", "deep_merge", "diff_states", "project_at_sequence", "project_state"]
