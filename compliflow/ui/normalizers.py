"""Pure, per-template prop normalisation.

Each normaliser receives a fresh copy of the merged props and returns the props to
render. Generated ids only need to be unique inside one request.
"""

from __future__ import annotations

from typing import Any, Callable

from ..schemas.ui import UITemplateType

Normalizer = Callable[[dict[str, Any]], dict[str, Any]]


def _humanize(identifier: str) -> str:
    return identifier.replace("_", " ").replace("-", " ").strip().capitalize()


def _normalize_entries(entries: Any, *, prefix: str, defaults: dict[str, Any]) -> list[Any]:
    if not isinstance(entries, list):
        return entries
    taken = {str(entry["id"]) for entry in entries if isinstance(entry, dict) and entry.get("id") is not None}
    counter = 0
    normalized: list[Any] = []
    for entry in entries:
        if not isinstance(entry, dict):
            normalized.append(entry)
            continue
        item = dict(entry)
        if item.get("id") is None:
            while f"{prefix}_{counter}" in taken:
                counter += 1
            item["id"] = f"{prefix}_{counter}"
            taken.add(item["id"])
        item.setdefault("label", _humanize(str(item["id"])))
        for key, value in defaults.items():
            item.setdefault(key, value)
        normalized.append(item)
    return normalized


def normalize_fields(props: dict[str, Any]) -> dict[str, Any]:
    props["fields"] = _normalize_entries(props.get("fields"), prefix="field", defaults={"type": "text", "required": False})
    return props


def normalize_actions(props: dict[str, Any]) -> dict[str, Any]:
    if "actions" in props:
        props["actions"] = _normalize_entries(props.get("actions"), prefix="action", defaults={"variant": "default"})
    return props


def normalize_business_info(props: dict[str, Any]) -> dict[str, Any]:
    info = props.get("business_info")
    if isinstance(info, dict):
        props["business_info"] = {
            **info,
            "name": info.get("name") or "Unknown Business",
            "type": info.get("type") or "Business",
        }
    return props


def normalize_steps(props: dict[str, Any]) -> dict[str, Any]:
    props["steps"] = _normalize_entries(props.get("steps"), prefix="step", defaults={"completed": False})
    return props


def normalize_progress(props: dict[str, Any]) -> dict[str, Any]:
    current, total = props.get("current"), props.get("total")
    if isinstance(current, (int, float)) and isinstance(total, (int, float)) and total > 0:
        props["percentage"] = max(0, min(100, round(current * 100 / total)))
    return props


def normalize_obligations(props: dict[str, Any]) -> dict[str, Any]:
    props["obligations"] = _normalize_entries(
        props.get("obligations"), prefix="obligation", defaults={"status": "pending"}
    )
    return props


NORMALIZERS: dict[str, tuple[Normalizer, ...]] = {
    UITemplateType.ACTION_PILL_GROUP.value: (normalize_actions,),
    UITemplateType.APPROVAL_REQUEST.value: (normalize_actions,),
    UITemplateType.FOUND_YOU_CARD.value: (normalize_business_info, normalize_actions),
    UITemplateType.SMART_TEXT_INPUT.value: (normalize_fields, normalize_actions),
    UITemplateType.STEPPED_WIZARD.value: (normalize_steps,),
    UITemplateType.PROGRESS_INDICATOR.value: (normalize_progress,),
    UITemplateType.COMPLIANCE_ROADMAP.value: (normalize_obligations,),
}


def normalize_props(template_type: str, props: dict[str, Any]) -> dict[str, Any]:
    for normalizer in NORMALIZERS.get(template_type, (normalize_actions,)):
        props = normalizer(props)
    return props


__all__ = ["NORMALIZERS", "normalize_props"]
