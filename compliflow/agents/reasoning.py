from __future__ import annotations

import json
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError

from ..core.config import AgentDefinition
from ..core.errors import AgentExecutionError
from ..core.logging import get_logger
from ..schemas.a2a import A2ATask, A2ATaskResult, TaskResultStatus, UIAugmentation
from ..schemas.ui import UIRequest
from ..services.llm import LLMClient, LLMRequest
from .base import AgentCapability, ExecutionScope

logger = get_logger(name=__name__)


class AgentDecision(BaseModel):
    status: Literal["complete", "pending_user_input", "escalated"] = "complete"
    result: dict[str, Any] = Field(default_factory=dict)
    reasoning: str = Field(..., min_length=1)
    ui_requests: list[UIRequest] = Field(default_factory=list)


AGENT_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["status", "reasoning"],
    "properties": {
        "status": {"type": "string", "enum": ["complete", "pending_user_input", "escalated"]},
        "result": {"type": "object"},
        "reasoning": {"type": "string"},
        "ui_requests": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["request_id", "template_type", "semantic_data"],
                "properties": {
                    "request_id": {"type": "string"},
                    "template_type": {"type": "string"},
                    "semantic_data": {"type": "object"},
                    "required": {"type": "boolean"},
                    "urgency": {"type": "string", "enum": ["critical", "high", "medium", "low"]},
                },
            },
        },
    },
}


def _parse_json(text: str) -> dict[str, Any]:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        start = text.find("{")
        end = text.rfind("}")
        if start == -1 or end <= start:
            raise AgentExecutionError("Agent response did not contain JSON") from None
        try:
            payload = json.loads(text[start : end + 1])
        except json.JSONDecodeError as exc:
            raise AgentExecutionError("Agent response did not contain valid JSON") from exc
    if not isinstance(payload, dict):
        raise AgentExecutionError("Agent response must be a JSON object")
    return payload


class ReasoningAgent:
    """Generic agent whose behaviour is a role definition plus one LLM call."""

    def __init__(
        self,
        definition: AgentDefinition,
        llm: LLMClient,
        *,
        model: str | None = None,
        temperature: float = 0.1,
    ) -> None:
        self._definition = definition
        self._llm = llm
        self._model = model
        self._temperature = temperature
        self.capability = AgentCapability(
            role=definition.role,
            name=definition.name,
            description=definition.description,
            skills=tuple(definition.skills),
            timeout_seconds=definition.timeout_seconds,
        )

    async def handle(self, task: A2ATask, scope: ExecutionScope) -> A2ATaskResult:
        profile = None
        if scope.tenant.business_id:
            profile = await scope.require_data().get("business_profiles", scope.tenant.business_id)

        response = await self._llm.complete(
            LLMRequest(
                prompt=self._build_prompt(task, profile),
                model=self._model,
                system_prompt=self._system_prompt(),
                response_format="json",
                schema=AGENT_RESPONSE_SCHEMA,
                temperature=self._temperature,
            )
        )
        try:
            decision = AgentDecision.model_validate(_parse_json(response.content))
        except ValidationError as exc:
            raise AgentExecutionError(
                "Agent response did not match the expected shape",
                details={"errors": exc.error_count()},
            ) from exc

        logger.info(
            "reasoning_agent_decided",
            agent=self.capability.role,
            task_id=task.id,
            status=decision.status,
            ui_requests=len(decision.ui_requests),
        )
        if decision.status == "pending_user_input":
            if not decision.ui_requests:
                raise AgentExecutionError("Agent asked for input without describing it")
            return A2ATaskResult.needs_input(decision.ui_requests, reason=decision.reasoning, result=decision.result)
        status = TaskResultStatus(decision.status)
        augmentation = UIAugmentation(requests=decision.ui_requests) if decision.ui_requests else None
        return A2ATaskResult(
            status=status,
            result=decision.result,
            reasoning=decision.reasoning,
            ui_augmentation=augmentation,
        )

    def _system_prompt(self) -> str:
        lines = [
            f"You are the {self._definition.name} agent ({self._definition.role}).",
            self._definition.description,
            "Reply with one JSON object containing status, result, reasoning and optional ui_requests.",
            "Use status pending_user_input only when the user must supply information you cannot find.",
        ]
        if self._definition.instructions:
            lines.append(self._definition.instructions)
        return "\n".join(line for line in lines if line)

    def _build_prompt(self, task: A2ATask, profile: dict[str, Any] | None) -> str:
        sections = [
            ("Task", json.dumps({"id": task.id, "type": task.type}, sort_keys=True)),
            ("Phase goals", json.dumps(task.input.get("goals", []), indent=2, sort_keys=True)),
            ("Known data", json.dumps(task.input.get("data", {}), indent=2, sort_keys=True, default=str)),
        ]
        if profile:
            sections.append(("Stored business profile", json.dumps(profile, indent=2, sort_keys=True, default=str)))
        return "\n\n".join(f"{title}:\n{body}" for title, body in sections)


__all__ = ["AGENT_RESPONSE_SCHEMA", "AgentDecision", "ReasoningAgent"]
