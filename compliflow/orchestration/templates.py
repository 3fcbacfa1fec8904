from __future__ import annotations

import json
from importlib import resources
from pathlib import Path
from typing import Iterable

from pydantic import ValidationError

from ..core.config import Settings
from ..core.errors import TemplateNotFound
from ..core.logging import get_logger
from ..schemas.templates import TaskTemplate

logger = get_logger(name=__name__)

_BUILTIN_PACKAGE = "compliflow.templates"


class TemplateRegistry:
    """Holds task templates by id. ``get`` always hands out a deep copy."""

    def __init__(self, templates: Iterable[TaskTemplate] = ()) -> None:
        self._templates: dict[str, TaskTemplate] = {}
        for template in templates:
            self.register(template)

    def register(self, template: TaskTemplate) -> None:
        self._templates[template.id] = template.snapshot()

    def get(self, template_id: str) -> TaskTemplate:
        template = self._templates.get(template_id)
        if template is None:
            raise TemplateNotFound(template_id)
        return template.snapshot()

    def list(self) -> list[TaskTemplate]:
        return [self._templates[key].snapshot() for key in sorted(self._templates)]

    def __contains__(self, template_id: object) -> bool:
        return template_id in self._templates

    def load_directory(self, path: str | Path) -> int:
        loaded = 0
        for file_path in sorted(Path(path).glob("*.json")):
            try:
                template = TaskTemplate.model_validate_json(file_path.read_text(encoding="utf-8"))
            except (OSError, ValidationError) as exc:
                logger.warning("template_load_failed", path=str(file_path), error=str(exc))
                continue
            self.register(template)
            loaded += 1
        return loaded

    def load_builtin(self) -> int:
        loaded = 0
        for resource in sorted(resources.files(_BUILTIN_PACKAGE).iterdir(), key=lambda item: item.name):
            if not resource.name.endswith(".json"):
                continue
            self.register(TaskTemplate.model_validate(json.loads(resource.read_text(encoding="utf-8"))))
            loaded += 1
        return loaded

    @classmethod
    def from_settings(cls, settings: Settings) -> "TemplateRegistry":
        registry = cls()
        registry.load_builtin()
        if settings.templates_path:
            registry.load_directory(settings.templates_path)
        logger.info("templates_loaded", count=len(registry._templates))
        return registry


__all__ = ["TemplateRegistry"]
