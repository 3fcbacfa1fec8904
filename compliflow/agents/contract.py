"""Fixed execution pipeline every agent runs behind.

The pipeline is a chain of middlewares around ``Agent.handle``::

    ErrorBoundary -> TenantGuard -> AuditTrail -> TenantScoping -> Timeout -> agent

``TenantGuard`` rejects a task before any audit, data handle or LLM call happens.
``ErrorBoundary`` guarantees the orchestrator only ever sees ``A2ATaskResult``.
"""

from __future__ import annotations

import asyncio
from time import perf_counter
from typing import Awaitable, Callable, Protocol, Sequence

from ..core.audit import AuditRecord, AuditSink
from ..core.errors import (
    AgentExecutionError,
    AgentTimeoutError,
    CompliflowError,
    TenantAccessDenied,
)
from ..core.logging import get_logger
from ..core.metrics import increment_audit_failure, observe_agent_execution
from ..schemas.a2a import A2ATask, A2ATaskResult, TaskResultStatus
from .base import Agent, AgentCapability, ExecutionScope
from .tenancy import TenantDataHandleFactory

logger = get_logger(name=__name__)

Handler = Callable[[A2ATask, ExecutionScope], Awaitable[A2ATaskResult]]


class Middleware(Protocol):
    async def __call__(self, task: A2ATask, scope: ExecutionScope, call_next: Handler) -> A2ATaskResult:
        ...


class ErrorBoundary:
    async def __call__(self, task: A2ATask, scope: ExecutionScope, call_next: Handler) -> A2ATaskResult:
        try:
            return await call_next(task, scope)
        except CompliflowError as exc:
            logger.warning(
                "agent_execution_error",
                agent=scope.capability.role,
                task_id=task.id,
                code=exc.code,
                error=exc.message,
            )
            return A2ATaskResult.failed(exc.code, exc.message, details=exc.details)
        except Exception as exc:
            logger.exception("agent_execution_crashed", agent=scope.capability.role, task_id=task.id)
            # The raw message may quote tenant data, so only the type crosses the boundary.
            return A2ATaskResult.failed(
                AgentExecutionError.code,
                f"Agent {scope.capability.role} failed",
                details={"exception": type(exc).__name__},
            )


class TenantGuard:
    def __init__(self, audit: AuditSink | None = None) -> None:
        self._audit = audit

    async def __call__(self, task: A2ATask, scope: ExecutionScope, call_next: Handler) -> A2ATaskResult:
        role = scope.capability.role
        if role in task.tenant_context.allowed_agents:
            return await call_next(task, scope)
        logger.warning("agent_tenant_access_denied", agent=role, task_id=task.id, tenant_id=task.tenant_context.tenant_id)
        if self._audit is not None:
            await _record_audit(
                self._audit,
                AuditRecord(
                    task_id=task.id,
                    agent_role=role,
                    action="task_access_denied",
                    tenant_id=task.tenant_context.tenant_id,
                    user_id=task.tenant_context.user_id,
                ),
            )
        denied = TenantAccessDenied()
        return A2ATaskResult.failed(denied.code, denied.message)


class AuditTrail:
    def __init__(self, audit: AuditSink) -> None:
        self._audit = audit

    async def __call__(self, task: A2ATask, scope: ExecutionScope, call_next: Handler) -> A2ATaskResult:
        tenant = task.tenant_context
        role = scope.capability.role

        def _record(action: str, **details: object) -> AuditRecord:
            return AuditRecord(
                task_id=task.id,
                agent_role=role,
                action=action,
                tenant_id=tenant.tenant_id,
                user_id=tenant.user_id,
                details={"task_type": task.type, **details},
            )

        await _record_audit(self._audit, _record("task_execution_started", agent_version=scope.capability.version))
        start = perf_counter()
        try:
            result = await call_next(task, scope)
        except Exception as exc:
            duration_ms = round((perf_counter() - start) * 1000, 3)
            code = exc.code if isinstance(exc, CompliflowError) else AgentExecutionError.code
            await _record_audit(self._audit, _record("task_execution_failed", duration_ms=duration_ms, error_code=code))
            raise

        duration_ms = round((perf_counter() - start) * 1000, 3)
        if result.status is TaskResultStatus.ERROR:
            error_code = result.error.code if result.error else AgentExecutionError.code
            await _record_audit(
                self._audit,
                _record("task_execution_failed", duration_ms=duration_ms, error_code=error_code),
            )
        else:
            await _record_audit(
                self._audit,
                _record("task_execution_completed", duration_ms=duration_ms, status=result.status.value),
            )
        return result


class TenantScoping:
    def __init__(self, factory: TenantDataHandleFactory) -> None:
        self._factory = factory

    async def __call__(self, task: A2ATask, scope: ExecutionScope, call_next: Handler) -> A2ATaskResult:
        # for_token raises TenantTokenMissing for an absent token; there is no elevated fallback.
        handle = self._factory.for_token(task.tenant_context.user_token or "")
        scope.data = handle
        try:
            return await call_next(task, scope)
        finally:
            handle.revoke()
            scope.data = None


class Timeout:
    def __init__(self, default_seconds: float) -> None:
        self._default_seconds = default_seconds

    async def __call__(self, task: A2ATask, scope: ExecutionScope, call_next: Handler) -> A2ATaskResult:
        seconds = scope.capability.timeout_seconds or self._default_seconds
        override = task.metadata.get("timeout_seconds")
        if isinstance(override, (int, float)) and override > 0:
            seconds = float(override)
        multiplier = task.metadata.get("timeout_multiplier")
        if isinstance(multiplier, (int, float)) and multiplier > 1:
            seconds *= multiplier
        try:
            return await asyncio.wait_for(call_next(task, scope), timeout=seconds)
        except asyncio.TimeoutError as exc:
            raise AgentTimeoutError(scope.capability.role, seconds) from exc


async def _record_audit(sink: AuditSink, record: AuditRecord) -> None:
    try:
        await sink.record(record)
    except Exception as exc:
        increment_audit_failure(action=record.action)
        logger.warning("agent_audit_failed", action=record.action, agent=record.agent_role, error=str(exc))


def _chain(handler: Handler, middlewares: Sequence[Middleware]) -> Handler:
    for middleware in reversed(middlewares):
        handler = _bind(middleware, handler)
    return handler


def _bind(middleware: Middleware, call_next: Handler) -> Handler:
    async def _invoke(task: A2ATask, scope: ExecutionScope) -> A2ATaskResult:
        return await middleware(task, scope, call_next)

    return _invoke


class ContractedAgent:
    """An agent wrapped in the execution pipeline; this is what the orchestrator calls."""

    def __init__(self, agent: Agent, middlewares: Sequence[Middleware]) -> None:
        self._agent = agent
        self._handler = _chain(agent.handle, middlewares)

    @property
    def capability(self) -> AgentCapability:
        return self._agent.capability

    async def execute_task(self, task: A2ATask) -> A2ATaskResult:
        scope = ExecutionScope(capability=self._agent.capability, tenant=task.tenant_context)
        start = perf_counter()
        result = await self._handler(task, scope)
        observe_agent_execution(agent=self.capability.role, status=result.status.value, latency=perf_counter() - start)
        return result


def build_contracted_agent(
    agent: Agent,
    *,
    audit: AuditSink,
    data_factory: TenantDataHandleFactory,
    default_timeout_seconds: float,
) -> ContractedAgent:
    return ContractedAgent(
        agent,
        [
            ErrorBoundary(),
            TenantGuard(audit),
            AuditTrail(audit),
            TenantScoping(data_factory),
            Timeout(default_timeout_seconds),
        ],
    )


__all__ = [
    "AuditTrail",
    "ContractedAgent",
    "ErrorBoundary",
    "Handler",
    "Middleware",
    "TenantGuard",
    "TenantScoping",
    "Timeout",
    "build_contracted_agent",
]
