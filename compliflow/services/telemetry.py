from __future__ import annotations

from collections import Counter, OrderedDict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, AsyncIterator, Literal

from ..core.config import TelemetrySettings
from ..core.logging import get_logger
from ..core.metrics import observe_task_operation

logger = get_logger(name=__name__)

EventKind = Literal[
    "agent_start",
    "agent_complete",
    "tool_call",
    "llm_call",
    "db_operation",
    "sse_broadcast",
    "error",
    "custom",
]


@dataclass(slots=True)
class TaskEvent:
    kind: EventKind
    name: str
    offset_ms: float
    duration_ms: float | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class _TrackedTask:
    context_id: str
    started_at: datetime
    started: float
    events: list[TaskEvent] = field(default_factory=list)


@dataclass(slots=True)
class TaskPerformanceSummary:
    context_id: str
    total_duration_ms: float
    event_counts: dict[str, int]
    agent_breakdown_ms: dict[str, float]
    error_count: int
    slowest: list[dict[str, Any]]


class TaskPerformanceTracker:
    """Correlates timings of sub-operations with the context they belong to.

    Only the most recent ``max_tracked_tasks`` contexts are kept; starting one more
    drops the oldest.
    """

    def __init__(self, settings: TelemetrySettings) -> None:
        self._max_tasks = settings.max_tracked_tasks
        self._tasks: OrderedDict[str, _TrackedTask] = OrderedDict()

    def start_task(self, context_id: str) -> None:
        self._tasks.pop(context_id, None)
        self._tasks[context_id] = _TrackedTask(
            context_id=context_id,
            started_at=datetime.now(timezone.utc),
            started=perf_counter(),
        )
        while len(self._tasks) > self._max_tasks:
            evicted, _ = self._tasks.popitem(last=False)
            logger.debug("task_tracking_evicted", context_id=evicted)

    def is_tracking(self, context_id: str) -> bool:
        return context_id in self._tasks

    def record_event(
        self,
        context_id: str,
        kind: EventKind,
        name: str,
        *,
        duration_ms: float | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        task = self._tasks.get(context_id)
        if task is None:
            return
        offset = (perf_counter() - task.started) * 1000
        task.events.append(
            TaskEvent(kind=kind, name=name, offset_ms=round(offset, 3), duration_ms=duration_ms, metadata=dict(metadata or {}))
        )
        if duration_ms is not None:
            observe_task_operation(kind=kind, latency=duration_ms / 1000)

    @asynccontextmanager
    async def measure(
        self,
        context_id: str,
        kind: EventKind,
        name: str,
        **metadata: Any,
    ) -> AsyncIterator[None]:
        start = perf_counter()
        try:
            yield
        except Exception as exc:
            duration = round((perf_counter() - start) * 1000, 3)
            self.record_event(context_id, "error", name, duration_ms=duration, metadata={**metadata, "error": type(exc).__name__})
            raise
        duration = round((perf_counter() - start) * 1000, 3)
        self.record_event(context_id, kind, name, duration_ms=duration, metadata=metadata)

    def timeline(self, context_id: str) -> list[TaskEvent]:
        task = self._tasks.get(context_id)
        return list(task.events) if task else []

    def complete_task(self, context_id: str) -> TaskPerformanceSummary | None:
        task = self._tasks.pop(context_id, None)
        if task is None:
            return None
        counts = Counter(event.kind for event in task.events)
        breakdown: dict[str, float] = {}
        for event in task.events:
            if event.kind in {"agent_complete", "error"} and event.duration_ms is not None and event.metadata.get("agent"):
                agent = str(event.metadata["agent"])
                breakdown[agent] = round(breakdown.get(agent, 0.0) + event.duration_ms, 3)
        timed = sorted((event for event in task.events if event.duration_ms is not None), key=lambda item: -(item.duration_ms or 0))
        summary = TaskPerformanceSummary(
            context_id=context_id,
            total_duration_ms=round((perf_counter() - task.started) * 1000, 3),
            event_counts=dict(counts),
            agent_breakdown_ms=breakdown,
            error_count=counts.get("error", 0),
            slowest=[{"kind": event.kind, "name": event.name, "duration_ms": event.duration_ms} for event in timed[:5]],
        )
        logger.info(
            "task_performance_summary",
            context_id=context_id,
            total_duration_ms=summary.total_duration_ms,
            event_counts=summary.event_counts,
        )
        return summary


__all__ = ["EventKind", "TaskEvent", "TaskPerformanceSummary", "TaskPerformanceTracker"]
