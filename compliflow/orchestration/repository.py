from __future__ import annotations

from typing import Any
from uuid import uuid4

from ..core.errors import ContextNotFound
from ..core.logging import get_logger
from ..schemas.a2a import TenantContext, TenantIdentity
from ..schemas.context import Actor, ContextEntry, EntryTrigger, TaskContext
from ..schemas.operations import TaskCreated
from ..schemas.templates import TaskTemplate
from .projection import project_state
from .recorder import EntryRecorder
from .templates import TemplateRegistry

logger = get_logger(name=__name__)


class ContextRepository:
    """Creates contexts and rebuilds them from their event log."""

    def __init__(self, recorder: EntryRecorder, templates: TemplateRegistry) -> None:
        self._recorder = recorder
        self._templates = templates

    async def create(
        self,
        template_id: str,
        *,
        tenant: TenantContext,
        initial_input: dict[str, Any] | None = None,
        context_id: str | None = None,
    ) -> TaskContext:
        template = self._templates.get(template_id)
        context_id = context_id or f"ctx_{uuid4().hex}"
        entry = ContextEntry.record(
            context_id,
            TaskCreated(
                template_id=template.id,
                tenant=tenant.identity(),
                template_snapshot=template.model_dump(mode="json"),
                initial_input=dict(initial_input or {}),
            ),
            actor=Actor.system(),
            reasoning=f"Task instantiated from template {template.id} v{template.version}",
            trigger=EntryTrigger(source="api", request_id=context_id),
        )
        await self._recorder.append(entry)
        logger.info("context_created", context_id=context_id, template_id=template.id, tenant_id=tenant.tenant_id)
        return await self.load(context_id, tenant=tenant)

    async def load(self, context_id: str, *, tenant: TenantContext) -> TaskContext:
        history = await self._recorder.store.read(context_id)
        if not history:
            raise ContextNotFound(context_id)
        created = history[0].payload()
        if not isinstance(created, TaskCreated):
            raise ContextNotFound(context_id)
        # Contexts owned by another tenant are indistinguishable from missing ones.
        if created.tenant.tenant_id != tenant.tenant_id:
            logger.warning("context_tenant_mismatch", context_id=context_id)
            raise ContextNotFound(context_id)

        identity = TenantIdentity(
            tenant_id=created.tenant.tenant_id,
            business_id=created.tenant.business_id,
            user_id=tenant.user_id or created.tenant.user_id,
            allowed_agents=created.tenant.allowed_agents,
        )
        return TaskContext(
            context_id=context_id,
            tenant=TenantContext.from_identity(identity, user_token=tenant.user_token),
            template_id=created.template_id,
            template_snapshot=TaskTemplate.model_validate(created.template_snapshot),
            history=history,
            current_state=project_state(history),
        )

    async def refresh(self, context: TaskContext) -> TaskContext:
        return await self.load(context.context_id, tenant=context.tenant)


__all__ = ["ContextRepository"]
