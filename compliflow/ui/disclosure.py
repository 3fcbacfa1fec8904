from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

from ..schemas.ui import InterpretedUIElement, UIRequest
from .interpreter import UIInterpreter

URGENCY_RANK = {"critical": 0, "high": 1, "medium": 2, "low": 3}


@dataclass(slots=True)
class DisclosurePlan:
    elements: list[InterpretedUIElement] = field(default_factory=list)
    batches: list[list[str]] = field(default_factory=list)

    def summary(self) -> dict[str, Any]:
        return {
            "count": len(self.elements),
            "types": sorted({element.metadata.template_type for element in self.elements}),
            "request_ids": [element.metadata.request_id for element in self.elements],
            "batches": len(self.batches),
        }


def order_requests(requests: Sequence[UIRequest]) -> list[UIRequest]:
    """Required before optional, then by urgency; ties keep their original order."""
    indexed = list(enumerate(requests))
    indexed.sort(key=lambda item: (not item[1].required, URGENCY_RANK.get(item[1].urgency, 2), item[0]))
    return [request for _, request in indexed]


def prioritize_fields(element: InterpretedUIElement) -> InterpretedUIElement:
    fields = element.props.get("fields")
    if not isinstance(fields, list):
        return element
    ordered = sorted(
        enumerate(fields),
        key=lambda item: (not (isinstance(item[1], dict) and item[1].get("required")), item[0]),
    )
    props = dict(element.props)
    props["fields"] = [entry for _, entry in ordered]
    return element.model_copy(update={"props": props})


def batch_elements(elements: Sequence[InterpretedUIElement], batch_size: int) -> list[list[str]]:
    size = max(1, batch_size)
    ids = [element.id for element in elements]
    return [ids[index : index + size] for index in range(0, len(ids), size)]


def plan_disclosure(
    requests: Sequence[UIRequest],
    interpreter: UIInterpreter,
    *,
    batch_size: int,
    context_id: str | None = None,
) -> DisclosurePlan:
    ordered = order_requests(requests)
    elements = [prioritize_fields(element) for element in interpreter.interpret_batch(ordered, context_id=context_id)]
    return DisclosurePlan(elements=elements, batches=batch_elements(elements, batch_size))


__all__ = ["DisclosurePlan", "URGENCY_RANK", "batch_elements", "order_requests", "plan_disclosure", "prioritize_fields"]
