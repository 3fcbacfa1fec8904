from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

Urgency = Literal["critical", "high", "medium", "low"]


class UITemplateType(str, Enum):
    ACTION_PILL_GROUP = "action_pill_group"
    FOUND_YOU_CARD = "found_you_card"
    SMART_TEXT_INPUT = "smart_text_input"
    PROGRESS_INDICATOR = "progress_indicator"
    DOCUMENT_UPLOAD = "document_upload"
    DATA_SUMMARY = "data_summary"
    STEPPED_WIZARD = "stepped_wizard"
    APPROVAL_REQUEST = "approval_request"
    ERROR_DISPLAY = "error_display"
    SUCCESS_SCREEN = "success_screen"
    INSTRUCTION_PANEL = "instruction_panel"
    WAITING_SCREEN = "waiting_screen"
    COMPLIANCE_ROADMAP = "compliance_roadmap"


class UIRequest(BaseModel):
    """An agent's semantic declaration that something has to be shown to the user."""

    model_config = ConfigDict(extra="forbid")

    request_id: str = Field(..., min_length=1)
    # Kept as a plain string so unknown template types reach the interpreter and fail there.
    template_type: str = Field(..., min_length=1)
    semantic_data: dict[str, Any] = Field(default_factory=dict)
    context: dict[str, Any] | None = None
    actions: list[dict[str, Any]] | None = None
    layout_hints: dict[str, Any] | None = None
    required: bool = False
    urgency: Urgency = "medium"


class UIElementMetadata(BaseModel):
    template_type: str
    request_id: str
    context_id: str | None = None


class InterpretedUIElement(BaseModel):
    id: str
    component: str
    props: dict[str, Any]
    validation: dict[str, Any] | None = None
    layout: dict[str, Any] = Field(default_factory=dict)
    metadata: UIElementMetadata


class ValidationResult(BaseModel):
    valid: bool
    errors: list[str] = Field(default_factory=list)


class TemplateRequirements(BaseModel):
    template_type: str
    component: str
    required_data: list[str]
    default_props: dict[str, Any] = Field(default_factory=dict)


__all__ = [
    "InterpretedUIElement",
    "TemplateRequirements",
    "UIElementMetadata",
    "UIRequest",
    "UITemplateType",
    "Urgency",
    "ValidationResult",
]
