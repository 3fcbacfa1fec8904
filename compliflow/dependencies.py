from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from fastapi import Header, HTTPException, Request, status

from .agents.base import Agent, AgentRegistry
from .agents.contract import build_contracted_agent
from .agents.reasoning import ReasoningAgent
from .agents.tenancy import HttpTenantDataHandleFactory, InMemoryTenantDataStore, TenantDataHandleFactory
from .core.audit import AuditSink, StructlogAuditSink
from .core.config import Settings
from .orchestration.orchestrator import Orchestrator
from .orchestration.planner import PhasePlanner
from .orchestration.recorder import EntryRecorder
from .orchestration.repository import ContextRepository
from .orchestration.store import EventStore, build_event_store
from .orchestration.templates import TemplateRegistry
from .schemas.a2a import TenantContext
from .services.llm import LLMClient, OllamaLLMService
from .services.notifications import ContextNotifier, log_entry
from .services.telemetry import TaskPerformanceTracker
from .ui.interpreter import UIInterpreter


@dataclass(slots=True)
class ServiceContainer:
    """Every long-lived collaborator, wired once per application instance."""

    settings: Settings
    store: EventStore
    notifier: ContextNotifier
    recorder: EntryRecorder
    templates: TemplateRegistry
    repository: ContextRepository
    interpreter: UIInterpreter
    agents: AgentRegistry
    planner: PhasePlanner
    tracker: TaskPerformanceTracker
    orchestrator: Orchestrator
    data_factory: TenantDataHandleFactory

    @classmethod
    def build(
        cls,
        settings: Settings,
        *,
        llm: LLMClient | None = None,
        store: EventStore | None = None,
        audit: AuditSink | None = None,
        data_factory: TenantDataHandleFactory | None = None,
        agents: Iterable[Agent] | None = None,
        templates: TemplateRegistry | None = None,
    ) -> "ServiceContainer":
        llm = llm or OllamaLLMService.from_settings(settings)
        store = store or build_event_store(settings)
        audit = audit or StructlogAuditSink()
        if data_factory is None:
            if settings.tenant_data.backend == "http":
                data_factory = HttpTenantDataHandleFactory(settings.tenant_data)
            else:
                data_factory = InMemoryTenantDataStore()

        notifier = ContextNotifier(settings.notifications)
        if settings.observability.log_level == "DEBUG":
            notifier.subscribe(log_entry)
        recorder = EntryRecorder(store, settings=settings.event_store, notifier=notifier)
        templates = templates or TemplateRegistry.from_settings(settings)
        repository = ContextRepository(recorder, templates)
        interpreter = UIInterpreter()
        tracker = TaskPerformanceTracker(settings.telemetry)

        if agents is None:
            agents = [ReasoningAgent(definition, llm) for definition in settings.agents.roster]
        registry = AgentRegistry(
            build_contracted_agent(
                agent,
                audit=audit,
                data_factory=data_factory,
                default_timeout_seconds=settings.agents.default_timeout_seconds,
            )
            for agent in agents
        )
        planner = PhasePlanner(llm, settings.planner_llm)
        orchestrator = Orchestrator(
            repository=repository,
            recorder=recorder,
            planner=planner,
            agents=registry,
            interpreter=interpreter,
            settings=settings.orchestration,
            ui_settings=settings.ui,
            tracker=tracker,
        )
        return cls(
            settings=settings,
            store=store,
            notifier=notifier,
            recorder=recorder,
            templates=templates,
            repository=repository,
            interpreter=interpreter,
            agents=registry,
            planner=planner,
            tracker=tracker,
            orchestrator=orchestrator,
            data_factory=data_factory,
        )

    async def aclose(self) -> None:
        await self.notifier.aclose()
        close_store = getattr(self.store, "close", None)
        if close_store is not None:
            await close_store()
        close_factory = getattr(self.data_factory, "aclose", None)
        if close_factory is not None:
            await close_factory()


def get_container(request: Request) -> ServiceContainer:
    container = getattr(request.app.state, "container", None)
    if container is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Service is starting up")
    return container


async def get_tenant(
    x_tenant_id: str = Header(..., min_length=1),
    x_user_id: str | None = Header(default=None),
    authorization: str | None = Header(default=None),
) -> TenantContext:
    token = None
    if authorization and authorization.lower().startswith("bearer "):
        token = authorization.split(" ", 1)[1].strip() or None
    return TenantContext(tenant_id=x_tenant_id, user_id=x_user_id, user_token=token)


__all__ = ["ServiceContainer", "get_container", "get_tenant"]
