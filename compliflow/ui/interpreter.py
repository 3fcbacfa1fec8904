from __future__ import annotations

import copy
from typing import Any, Sequence

from ..core.errors import InterpretationError
from ..core.logging import get_logger
from ..core.metrics import increment_ui_interpretation
from ..schemas.ui import (
    InterpretedUIElement,
    TemplateRequirements,
    UIElementMetadata,
    UIRequest,
    ValidationResult,
)
from .normalizers import normalize_props
from .registry import UITemplateDefinition, UITemplateRegistry

logger = get_logger(name=__name__)


def _available_data(request: UIRequest) -> dict[str, Any]:
    available = dict(request.semantic_data)
    if request.actions is not None:
        available.setdefault("actions", request.actions)
    return available


def _missing_fields(definition: UITemplateDefinition, request: UIRequest) -> list[str]:
    available = _available_data(request)
    return [name for name in definition.required_data if available.get(name) is None]


class UIInterpreter:
    """Turns semantic UI requests into renderable element descriptions.

    Interpretation has no side effects besides metrics and logging: the same request
    and registry always produce the same element.
    """

    def __init__(self, registry: UITemplateRegistry | None = None) -> None:
        self._registry = registry or UITemplateRegistry()

    @property
    def registry(self) -> UITemplateRegistry:
        return self._registry

    def validate_request(self, request: UIRequest) -> ValidationResult:
        definition = self._registry.get(request.template_type)
        if definition is None:
            return ValidationResult(valid=False, errors=[f"Unknown template type: {request.template_type}"])
        missing = _missing_fields(definition, request)
        return ValidationResult(
            valid=not missing,
            errors=[f"Missing required field: {name}" for name in missing],
        )

    def interpret(self, request: UIRequest, *, context_id: str | None = None) -> InterpretedUIElement:
        definition = self._registry.get(request.template_type)
        if definition is None:
            increment_ui_interpretation(template_type="unknown", outcome="unknown_template")
            raise InterpretationError(
                f"Unknown template type: {request.template_type}",
                template_type=request.template_type,
            )
        missing = _missing_fields(definition, request)
        if missing:
            increment_ui_interpretation(template_type=request.template_type, outcome="missing_fields")
            logger.info("ui_request_rejected", request_id=request.request_id, missing=missing)
            raise InterpretationError(
                f"UI request {request.request_id} is missing required fields: {', '.join(missing)}",
                template_type=request.template_type,
                missing_fields=missing,
            )

        props: dict[str, Any] = copy.deepcopy(dict(definition.default_props))
        props.update(copy.deepcopy(request.semantic_data))
        props["request_id"] = request.request_id
        if request.context is not None:
            props["context"] = copy.deepcopy(request.context)
        if request.actions is not None:
            props["actions"] = copy.deepcopy(request.actions)
        props = normalize_props(definition.template_type, props)

        layout = copy.deepcopy(dict(definition.layout))
        layout.update(copy.deepcopy(request.layout_hints or {}))

        increment_ui_interpretation(template_type=request.template_type, outcome="interpreted")
        return InterpretedUIElement(
            id=f"ui_{request.request_id}",
            component=definition.component,
            props=props,
            validation=copy.deepcopy(dict(definition.validation)) if definition.validation else None,
            layout=layout,
            metadata=UIElementMetadata(
                template_type=definition.template_type,
                request_id=request.request_id,
                context_id=context_id,
            ),
        )

    def interpret_batch(
        self,
        requests: Sequence[UIRequest],
        *,
        context_id: str | None = None,
    ) -> list[InterpretedUIElement]:
        """Interpret every request, or none of them.

        All invalid requests are reported together so the caller sees every problem
        in one error.
        """
        problems: list[str] = []
        missing: list[str] = []
        for request in requests:
            result = self.validate_request(request)
            if not result.valid:
                problems.extend(f"{request.request_id}: {error}" for error in result.errors)
                definition = self._registry.get(request.template_type)
                if definition is not None:
                    missing.extend(f"{request.request_id}.{name}" for name in _missing_fields(definition, request))
        if problems:
            raise InterpretationError(
                "Invalid UI requests: " + "; ".join(problems),
                missing_fields=missing,
            )
        return [self.interpret(request, context_id=context_id) for request in requests]

    def available_templates(self) -> list[str]:
        return self._registry.template_types()

    def template_requirements(self, template_type: str) -> TemplateRequirements:
        definition = self._registry.get(template_type)
        if definition is None:
            raise InterpretationError(f"Unknown template type: {template_type}", template_type=template_type)
        return definition.requirements()


__all__ = ["UIInterpreter"]
