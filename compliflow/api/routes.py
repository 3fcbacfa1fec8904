from __future__ import annotations

import asyncio
import json
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request, status
from fastapi.responses import StreamingResponse

from ..core.errors import CompliflowError
from ..core.logging import get_logger
from ..dependencies import ServiceContainer, get_container, get_tenant
from ..orchestration.orchestrator import RoundResult
from ..orchestration.projection import diff_states, project_at_sequence
from ..schemas.a2a import TenantContext
from ..schemas.api import (
    ContextListResponse,
    ContextResponse,
    CreateContextRequest,
    EntriesResponse,
    PendingUIResponse,
    RoundResponse,
    StateDiffResponse,
    TemplateSummary,
    UserInputRequest,
)
from ..schemas.context import ContextEntry, CurrentState, TaskContext
from ..schemas.ui import InterpretedUIElement, TemplateRequirements, UIRequest, ValidationResult
from ..services.notifications import entries_since

logger = get_logger(name=__name__)

router = APIRouter()

_ROUND_TERMINALS = frozenset({"round_completed", "round_needs_input", "round_failed"})
_HEARTBEAT_SECONDS = 15.0


def _format_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


def _context_response(context: TaskContext) -> ContextResponse:
    return ContextResponse(
        context_id=context.context_id,
        tenant_id=context.tenant_id,
        template_id=context.template_id,
        state=context.current_state,
    )


def _round_response(result: RoundResult) -> RoundResponse:
    return RoundResponse(
        context_id=result.context_id,
        round=result.round,
        status=result.status.value,
        plan_source=result.plan_source,
        completed_phases=list(result.completed_phases),
        pending_ui=result.pending_ui,
        error=result.error,
        skipped=result.skipped,
    )


async def _run_round_in_background(container: ServiceContainer, context: TaskContext) -> None:
    try:
        result = await container.orchestrator.orchestrate(context)
    except CompliflowError as exc:
        logger.error("background_round_failed", context_id=context.context_id, code=exc.code, error=exc.message)
        return
    logger.info(
        "background_round_finished",
        context_id=context.context_id,
        round=result.round,
        status=result.status.value,
    )


@router.get("/health", tags=["health"])
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get("/templates", response_model=list[TemplateSummary], tags=["templates"])
async def list_templates(container: ServiceContainer = Depends(get_container)) -> list[TemplateSummary]:
    return [
        TemplateSummary(
            id=template.id,
            name=template.name,
            version=template.version,
            description=template.description,
            goals=[goal.id for goal in [*template.goals.primary, *template.goals.secondary]],
        )
        for template in container.templates.list()
    ]


@router.post("/contexts", response_model=ContextResponse, status_code=status.HTTP_201_CREATED, tags=["contexts"])
async def create_context(
    payload: CreateContextRequest,
    background_tasks: BackgroundTasks,
    run: bool = Query(True, description="Start the first orchestration round once the context exists."),
    tenant: TenantContext = Depends(get_tenant),
    container: ServiceContainer = Depends(get_container),
) -> ContextResponse:
    allowed = payload.allowed_agents if payload.allowed_agents is not None else container.agents.roles()
    owner = tenant.model_copy(update={"business_id": payload.business_id, "allowed_agents": tuple(allowed)})
    context = await container.repository.create(
        payload.template_id,
        tenant=owner,
        initial_input=payload.initial_input,
    )
    if run:
        background_tasks.add_task(_run_round_in_background, container, context)
    return _context_response(context)


@router.get("/contexts", response_model=ContextListResponse, tags=["contexts"])
async def list_contexts(
    tenant: TenantContext = Depends(get_tenant),
    container: ServiceContainer = Depends(get_container),
) -> ContextListResponse:
    return ContextListResponse(contexts=await container.store.list_contexts(tenant.tenant_id))


@router.get("/contexts/{context_id}", response_model=ContextResponse, tags=["contexts"])
async def get_context(
    context_id: str,
    tenant: TenantContext = Depends(get_tenant),
    container: ServiceContainer = Depends(get_container),
) -> ContextResponse:
    return _context_response(await container.repository.load(context_id, tenant=tenant))


@router.get("/contexts/{context_id}/entries", response_model=EntriesResponse, tags=["contexts"])
async def get_context_entries(
    context_id: str,
    from_sequence: int | None = Query(None, ge=1),
    tenant: TenantContext = Depends(get_tenant),
    container: ServiceContainer = Depends(get_container),
) -> EntriesResponse:
    context = await container.repository.load(context_id, tenant=tenant)
    entries = context.history
    if from_sequence is not None:
        entries = [entry for entry in entries if (entry.sequence_number or 0) >= from_sequence]
    return EntriesResponse(context_id=context_id, entries=entries)


@router.get("/contexts/{context_id}/state", response_model=CurrentState, tags=["contexts"])
async def get_context_state(
    context_id: str,
    at_sequence: int | None = Query(None, ge=1, description="Project only entries up to this sequence number."),
    tenant: TenantContext = Depends(get_tenant),
    container: ServiceContainer = Depends(get_container),
) -> CurrentState:
    context = await container.repository.load(context_id, tenant=tenant)
    if at_sequence is None:
        return context.current_state
    return project_at_sequence(context.history, at_sequence)


@router.get("/contexts/{context_id}/diff", response_model=StateDiffResponse, tags=["contexts"])
async def get_context_diff(
    context_id: str,
    from_sequence: int = Query(..., ge=0),
    to_sequence: int = Query(..., ge=0),
    tenant: TenantContext = Depends(get_tenant),
    container: ServiceContainer = Depends(get_container),
) -> StateDiffResponse:
    context = await container.repository.load(context_id, tenant=tenant)
    before = project_at_sequence(context.history, from_sequence)
    after = project_at_sequence(context.history, to_sequence)
    return StateDiffResponse(
        context_id=context_id,
        from_sequence=from_sequence,
        to_sequence=to_sequence,
        changes=diff_states(before, after),
    )


@router.post("/contexts/{context_id}/rounds", response_model=RoundResponse, tags=["orchestration"])
async def run_round(
    context_id: str,
    tenant: TenantContext = Depends(get_tenant),
    container: ServiceContainer = Depends(get_container),
) -> RoundResponse:
    context = await container.repository.load(context_id, tenant=tenant)
    return _round_response(await container.orchestrator.orchestrate(context))


@router.post("/contexts/{context_id}/input", response_model=RoundResponse, tags=["orchestration"])
async def submit_input(
    context_id: str,
    payload: UserInputRequest,
    tenant: TenantContext = Depends(get_tenant),
    container: ServiceContainer = Depends(get_container),
) -> RoundResponse:
    result = await container.orchestrator.submit_user_input(
        context_id,
        tenant=tenant,
        data=payload.data,
        responds_to=payload.responds_to,
        corrects=payload.corrects,
    )
    return _round_response(result)


@router.get("/contexts/{context_id}/ui", response_model=PendingUIResponse, tags=["ui"])
async def get_pending_ui(
    context_id: str,
    tenant: TenantContext = Depends(get_tenant),
    container: ServiceContainer = Depends(get_container),
) -> PendingUIResponse:
    state = (await container.repository.load(context_id, tenant=tenant)).current_state
    return PendingUIResponse(context_id=context_id, elements=state.pending_ui, batches=state.pending_ui_batches)


@router.get("/contexts/{context_id}/stream", tags=["contexts"])
async def stream_context(
    context_id: str,
    request: Request,
    from_sequence: int = Query(1, ge=1),
    follow: bool = Query(True, description="Keep streaming until the running round ends."),
    tenant: TenantContext = Depends(get_tenant),
    container: ServiceContainer = Depends(get_container),
) -> StreamingResponse:
    # Ownership is checked before the stream opens so a foreign context is a plain 404.
    await container.repository.load(context_id, tenant=tenant)

    def _entry_event(entry: ContextEntry) -> str:
        return _format_sse(entry.operation, entry.model_dump(mode="json"))

    async def event_stream():
        async with container.notifier.listen(context_id) as queue:
            # Subscribed before the replay read, so entries appended in between are
            # delivered by the queue and deduplicated by sequence number.
            last_sequence = from_sequence - 1
            replay = await container.store.read(context_id, from_sequence)
            for entry in replay:
                last_sequence = max(last_sequence, entry.sequence_number or 0)
                yield _entry_event(entry)

            finished = not follow or bool(replay and replay[-1].operation in _ROUND_TERMINALS)
            while not finished:
                if await request.is_disconnected():
                    break
                try:
                    entry = await asyncio.wait_for(queue.get(), timeout=_HEARTBEAT_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keep-alive\n\n"
                    continue
                pending = await entries_since(
                    entry,
                    last_sequence=last_sequence,
                    read=lambda start: container.store.read(context_id, start),
                )
                for item in pending:
                    last_sequence = max(last_sequence, item.sequence_number or 0)
                    yield _entry_event(item)
                    if item.operation in _ROUND_TERMINALS:
                        finished = True
                        break
        yield _format_sse("stream_end", {"context_id": context_id, "last_sequence": last_sequence})

    headers = {
        "Cache-Control": "no-cache",
        "Connection": "keep-alive",
        "X-Accel-Buffering": "no",
    }
    return StreamingResponse(event_stream(), media_type="text/event-stream", headers=headers)


@router.get("/ui/templates", response_model=list[TemplateRequirements], tags=["ui"])
async def list_ui_templates(container: ServiceContainer = Depends(get_container)) -> list[TemplateRequirements]:
    interpreter = container.interpreter
    return [interpreter.template_requirements(name) for name in interpreter.available_templates()]


@router.post("/ui/validate", response_model=ValidationResult, tags=["ui"])
async def validate_ui_request(
    payload: UIRequest,
    container: ServiceContainer = Depends(get_container),
) -> ValidationResult:
    return container.interpreter.validate_request(payload)


@router.post("/ui/interpret", response_model=InterpretedUIElement, tags=["ui"])
async def interpret_ui_request(
    payload: UIRequest,
    context_id: str | None = Query(None),
    container: ServiceContainer = Depends(get_container),
) -> InterpretedUIElement:
    return container.interpreter.interpret(payload, context_id=context_id)


__all__ = ["router"]
