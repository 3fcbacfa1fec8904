from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable, Protocol

from ..schemas.a2a import A2ATask, A2ATaskResult, TenantContext
from .tenancy import TenantDataHandle


@dataclass(slots=True, frozen=True)
class AgentCapability:
    role: str
    name: str
    description: str = ""
    skills: tuple[str, ...] = ()
    version: str = "1.0.0"
    timeout_seconds: float | None = None

    def describe(self) -> dict[str, object]:
        return {
            "role": self.role,
            "name": self.name,
            "description": self.description,
            "skills": list(self.skills),
        }


@dataclass(slots=True)
class ExecutionScope:
    """Per-invocation state threaded through the execution pipeline."""

    capability: AgentCapability
    tenant: TenantContext
    data: TenantDataHandle | None = None
    details: dict[str, object] = field(default_factory=dict)

    def require_data(self) -> TenantDataHandle:
        if self.data is None:
            raise RuntimeError("Tenant data handle accessed outside the execution pipeline")
        return self.data


class Agent(Protocol):
    """Core logic of an agent. Tenancy, audit and error handling are layered around it."""

    capability: AgentCapability

    async def handle(self, task: A2ATask, scope: ExecutionScope) -> A2ATaskResult:
        ...


class ExecutableAgent(Protocol):
    @property
    def capability(self) -> AgentCapability:
        ...

    async def execute_task(self, task: A2ATask) -> A2ATaskResult:
        ...


class AgentRegistry:
    def __init__(self, agents: Iterable[ExecutableAgent] = ()) -> None:
        self._agents: dict[str, ExecutableAgent] = {}
        for agent in agents:
            self.register(agent)

    def register(self, agent: ExecutableAgent) -> None:
        self._agents[agent.capability.role] = agent

    def get(self, role: str) -> ExecutableAgent | None:
        return self._agents.get(role)

    def roles(self) -> list[str]:
        return sorted(self._agents)

    def roster(self) -> list[AgentCapability]:
        return [self._agents[role].capability for role in self.roles()]

    def __contains__(self, role: object) -> bool:
        return role in self._agents

    def __len__(self) -> int:
        return len(self._agents)


__all__ = ["Agent", "AgentCapability", "AgentRegistry", "ExecutableAgent", "ExecutionScope"]
