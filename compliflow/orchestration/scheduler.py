from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable

from ..core.config import OrchestrationSettings
from ..core.logging import get_logger
from ..schemas.a2a import TaskError
from ..schemas.operations import PhaseOutcome
from .planner_contract import Phase, PhaseGraph

logger = get_logger(name=__name__)


@dataclass(slots=True)
class PhaseReport:
    phase: Phase
    outcome: PhaseOutcome
    data: dict[str, object] = field(default_factory=dict)
    error: TaskError | None = None
    escalations: list[dict[str, object]] = field(default_factory=list)


@dataclass(slots=True)
class DispatchResult:
    reports: list[PhaseReport] = field(default_factory=list)
    not_started: list[str] = field(default_factory=list)
    halted: bool = False


PhaseExecutor = Callable[[Phase], Awaitable[PhaseReport]]


class PhaseScheduler:
    """Runs a phase graph respecting prerequisites and the parallelizable flag.

    Ready parallelizable phases start together, bounded by ``max_concurrent_phases``.
    A non-parallelizable phase only starts when nothing else runs, and nothing starts
    beside it. Once a report with an outcome other than ``complete`` arrives no further
    phase is started, but phases already running are awaited to the end.
    """

    def __init__(self, settings: OrchestrationSettings) -> None:
        self._settings = settings

    async def dispatch(
        self,
        graph: PhaseGraph,
        *,
        executor: PhaseExecutor,
        satisfied: Iterable[str] = (),
    ) -> DispatchResult:
        order = graph.topological_order()
        done: set[str] = set(satisfied)
        pending: dict[str, Phase] = {phase.id: phase for phase in order if phase.id not in done}
        running: dict[asyncio.Task[PhaseReport], Phase] = {}
        result = DispatchResult()

        def exclusive_running() -> bool:
            return any(not phase.parallelizable for phase in running.values())

        def start(phase: Phase) -> None:
            pending.pop(phase.id)
            task = asyncio.create_task(executor(phase), name=f"phase:{phase.id}")
            running[task] = phase

        try:
            while True:
                if not result.halted and not exclusive_running():
                    ready = [
                        phase
                        for phase in pending.values()
                        if all(prerequisite in done for prerequisite in phase.prerequisites)
                    ]
                    for phase in ready:
                        if not phase.parallelizable:
                            if not running:
                                start(phase)
                            break
                        if len(running) >= self._settings.max_concurrent_phases:
                            break
                        start(phase)

                if not running:
                    break

                finished, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for task in finished:
                    phase = running.pop(task)
                    report = task.result()
                    result.reports.append(report)
                    if report.outcome == "complete":
                        done.add(phase.id)
                    elif not result.halted:
                        result.halted = True
                        logger.info("phase_dispatch_halted", phase_id=phase.id, outcome=report.outcome)
        finally:
            if running:
                # Something failed outside a phase; let in-flight phases settle before propagating.
                await asyncio.gather(*running, return_exceptions=True)

        result.not_started = list(pending)
        return result


__all__ = ["DispatchResult", "PhaseExecutor", "PhaseReport", "PhaseScheduler"]
