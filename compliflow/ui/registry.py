from __future__ import annotations

import copy
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from ..schemas.ui import TemplateRequirements, UITemplateType


@dataclass(slots=True, frozen=True)
class UITemplateDefinition:
    template_type: str
    component: str
    required_data: tuple[str, ...]
    default_props: Mapping[str, Any] = field(default_factory=dict)
    layout: Mapping[str, Any] = field(default_factory=dict)
    validation: Mapping[str, Any] | None = None

    def requirements(self) -> TemplateRequirements:
        return TemplateRequirements(
            template_type=self.template_type,
            component=self.component,
            required_data=list(self.required_data),
            default_props=copy.deepcopy(dict(self.default_props)),
        )


BUILTIN_TEMPLATES: tuple[UITemplateDefinition, ...] = (
    UITemplateDefinition(
        template_type=UITemplateType.ACTION_PILL_GROUP.value,
        component="ActionPillGroup",
        required_data=("actions",),
        default_props={"variant": "default", "layout": "horizontal"},
        layout={"width": "full", "alignment": "center"},
    ),
    UITemplateDefinition(
        template_type=UITemplateType.FOUND_YOU_CARD.value,
        component="FoundYouCard",
        required_data=("business_info",),
        default_props={"animated": True, "celebratory": True},
        layout={"width": "medium", "alignment": "center", "spacing": "comfortable"},
    ),
    UITemplateDefinition(
        template_type=UITemplateType.SMART_TEXT_INPUT.value,
        component="SmartTextInput",
        required_data=("fields",),
        default_props={"auto_complete": True, "validation": "on_change"},
        layout={"width": "medium", "alignment": "left"},
        validation={"rules": [{"field": "*", "type": "required"}]},
    ),
    UITemplateDefinition(
        template_type=UITemplateType.PROGRESS_INDICATOR.value,
        component="ProgressIndicator",
        required_data=("current", "total"),
        default_props={"show_percentage": True},
    ),
    UITemplateDefinition(
        template_type=UITemplateType.DOCUMENT_UPLOAD.value,
        component="DocumentUpload",
        required_data=("purpose",),
        default_props={"accepted_formats": [".pdf", ".doc", ".docx", ".jpg", ".png"], "multiple": False},
    ),
    UITemplateDefinition(
        template_type=UITemplateType.DATA_SUMMARY.value,
        component="DataSummary",
        required_data=("data",),
        default_props={"collapsible": True, "editable": False},
        layout={"width": "large", "alignment": "left"},
    ),
    UITemplateDefinition(
        template_type=UITemplateType.STEPPED_WIZARD.value,
        component="SteppedWizard",
        required_data=("steps",),
        default_props={"show_progress": True, "allow_skip": False, "allow_back": True},
    ),
    UITemplateDefinition(
        template_type=UITemplateType.APPROVAL_REQUEST.value,
        component="ApprovalRequest",
        required_data=("item", "actions"),
        default_props={"priority": "high"},
    ),
    UITemplateDefinition(
        template_type=UITemplateType.ERROR_DISPLAY.value,
        component="ErrorDisplay",
        required_data=("error",),
        default_props={"variant": "error", "dismissible": True},
    ),
    UITemplateDefinition(
        template_type=UITemplateType.SUCCESS_SCREEN.value,
        component="SuccessScreen",
        required_data=("message",),
        default_props={"celebratory": True},
    ),
    UITemplateDefinition(
        template_type=UITemplateType.INSTRUCTION_PANEL.value,
        component="InstructionPanel",
        required_data=("instructions",),
        default_props={"numbered": True},
    ),
    UITemplateDefinition(
        template_type=UITemplateType.WAITING_SCREEN.value,
        component="WaitingScreen",
        required_data=("message",),
        default_props={"show_spinner": True},
    ),
    UITemplateDefinition(
        template_type=UITemplateType.COMPLIANCE_ROADMAP.value,
        component="ComplianceRoadmap",
        required_data=("obligations",),
        default_props={"group_by": "deadline", "show_completed": False},
        layout={"width": "large", "alignment": "left"},
    ),
)


class UITemplateRegistry:
    """Immutable lookup of UI template definitions by template type."""

    def __init__(self, definitions: Iterable[UITemplateDefinition] = BUILTIN_TEMPLATES) -> None:
        table: dict[str, UITemplateDefinition] = {}
        for definition in definitions:
            if definition.template_type in table:
                raise ValueError(f"duplicate UI template type: {definition.template_type}")
            table[definition.template_type] = definition
        self._definitions = MappingProxyType(table)

    def get(self, template_type: str) -> UITemplateDefinition | None:
        return self._definitions.get(template_type)

    def template_types(self) -> list[str]:
        return sorted(self._definitions)

    def __contains__(self, template_type: object) -> bool:
        return template_type in self._definitions

    def __len__(self) -> int:
        return len(self._definitions)


__all__ = ["BUILTIN_TEMPLATES", "UITemplateDefinition", "UITemplateRegistry"]
