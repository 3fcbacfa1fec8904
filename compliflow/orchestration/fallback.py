from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Sequence

from ..schemas.a2a import TaskError
from ..schemas.templates import FallbackStrategy


@dataclass(slots=True, frozen=True)
class FallbackDecision:
    strategy: FallbackStrategy
    decision: Literal["retry", "escalate"]
    attempt: int
    max_attempts: int
    exhausted: bool = False


def match_strategy(strategies: Sequence[FallbackStrategy], error: TaskError) -> FallbackStrategy | None:
    """First strategy whose trigger occurs in the error code or message, ignoring case."""
    haystacks = (error.code.lower(), error.message.lower())
    for strategy in strategies:
        needle = strategy.trigger.lower()
        if any(needle in haystack for haystack in haystacks):
            return strategy
    return None


class FallbackPolicy:
    def __init__(self, strategies: Sequence[FallbackStrategy], *, default_max_attempts: int = 3) -> None:
        self._strategies = list(strategies)
        self._default_max_attempts = max(1, min(3, default_max_attempts))

    def max_attempts(self, strategy: FallbackStrategy) -> int:
        return max(1, min(3, strategy.max_attempts or self._default_max_attempts))

    def decide(self, error: TaskError, *, attempt: int) -> FallbackDecision | None:
        """Decision for a failed attempt, or ``None`` when no strategy covers the error."""
        strategy = match_strategy(self._strategies, error)
        if strategy is None:
            return None
        limit = self.max_attempts(strategy)
        if strategy.is_retry:
            if attempt < limit:
                return FallbackDecision(strategy=strategy, decision="retry", attempt=attempt, max_attempts=limit)
            return FallbackDecision(
                strategy=strategy, decision="escalate", attempt=attempt, max_attempts=limit, exhausted=True
            )
        return FallbackDecision(strategy=strategy, decision="escalate", attempt=attempt, max_attempts=limit)


__all__ = ["FallbackDecision", "FallbackPolicy", "match_strategy"]
