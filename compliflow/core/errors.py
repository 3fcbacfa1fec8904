"""Error taxonomy shared by the orchestration core and the HTTP boundary.

Every error carries a stable machine ``code``. Messages are written so they can be
shown to the caller without exposing another tenant's data.
"""

from __future__ import annotations

from typing import Any, Sequence


class CompliflowError(Exception):
    code: str = "COMPLIFLOW_ERROR"
    http_status: int = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class TenantAccessDenied(CompliflowError):
    code = "TENANT_ACCESS_DENIED"
    http_status = 403

    def __init__(self, message: str = "Access denied for this tenant") -> None:
        super().__init__(message)


class TenantTokenMissing(CompliflowError):
    code = "TENANT_TOKEN_MISSING"
    http_status = 401

    def __init__(self, message: str = "A user token is required to access tenant data") -> None:
        super().__init__(message)


class AgentExecutionError(CompliflowError):
    code = "AGENT_EXECUTION_ERROR"


class AgentTimeoutError(AgentExecutionError):
    code = "AGENT_TIMEOUT"

    def __init__(self, agent_role: str, timeout_seconds: float) -> None:
        super().__init__(
            f"Agent {agent_role} timed out after {timeout_seconds:g}s",
            details={"agent_role": agent_role, "timeout_seconds": timeout_seconds},
        )


class PlanningValidationError(CompliflowError):
    code = "PLANNING_VALIDATION_ERROR"
    http_status = 422

    def __init__(self, message: str, *, errors: Sequence[str] = ()) -> None:
        super().__init__(message, details={"errors": list(errors)} if errors else None)
        self.errors = list(errors)


class InterpretationError(CompliflowError):
    code = "UI_INTERPRETATION_ERROR"
    http_status = 422

    def __init__(
        self,
        message: str,
        *,
        template_type: str | None = None,
        missing_fields: Sequence[str] = (),
    ) -> None:
        details: dict[str, Any] = {}
        if template_type is not None:
            details["template_type"] = template_type
        if missing_fields:
            details["missing_fields"] = list(missing_fields)
        super().__init__(message, details=details)
        self.template_type = template_type
        self.missing_fields = list(missing_fields)


class LLMUnavailableError(CompliflowError):
    code = "LLM_UNAVAILABLE"
    http_status = 503


class EventStoreUnavailable(CompliflowError):
    code = "EVENT_STORE_UNAVAILABLE"
    http_status = 503


class EventAppendError(CompliflowError):
    code = "EVENT_APPEND_FAILED"
    http_status = 503


class ContextNotFound(CompliflowError):
    code = "CONTEXT_NOT_FOUND"
    http_status = 404

    def __init__(self, context_id: str) -> None:
        super().__init__(f"Context {context_id} not found")


class InvalidRoundTransition(CompliflowError):
    code = "INVALID_ROUND_TRANSITION"
    http_status = 409


class TemplateNotFound(CompliflowError):
    code = "TEMPLATE_NOT_FOUND"
    http_status = 404

    def __init__(self, template_id: str) -> None:
        super().__init__(f"Template {template_id} not found")


__all__ = [
    "AgentExecutionError",
    "AgentTimeoutError",
    "CompliflowError",
    "ContextNotFound",
    "EventAppendError",
    "EventStoreUnavailable",
    "InterpretationError",
    "InvalidRoundTransition",
    "LLMUnavailableError",
    "PlanningValidationError",
    "TemplateNotFound",
    "TenantAccessDenied",
    "TenantTokenMissing",
]
