from __future__ import annotations

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from compliflow.core.errors import TemplateNotFound
from compliflow.orchestration.templates import TemplateRegistry
from compliflow.schemas.templates import TaskTemplate
from tests.helpers.stubs import build_settings, make_template


def test_builtin_templates_load() -> None:
    registry = TemplateRegistry()

    assert registry.load_builtin() >= 1
    template = registry.get("business_onboarding")
    assert template.required_goal_ids() == ["business_profile", "compliance_roadmap"]
    assert {hint.id for hint in template.phases} >= {"business_discovery", "compliance_analysis"}


def test_get_returns_independent_snapshots() -> None:
    registry = TemplateRegistry([make_template()])

    snapshot = registry.get("business_onboarding")
    snapshot.goals.primary[0].description = "changed"

    assert registry.get("business_onboarding").goals.primary[0].description != "changed"


def test_missing_template_raises() -> None:
    with pytest.raises(TemplateNotFound):
        TemplateRegistry().get("ghost")


def test_templates_reject_execution_scripts() -> None:
    with pytest.raises(ValidationError):
        make_template(steps=[{"agent": "profile_collector"}])


def test_fallback_strategy_attempts_are_bounded() -> None:
    with pytest.raises(ValidationError):
        make_template(fallback_strategies=[{"trigger": "timeout", "action": "retry", "max_attempts": 5}])


def test_directory_templates_are_loaded_alongside_builtin(tmp_path: Path) -> None:
    custom = make_template(id="annual_filing", name="Annual Filing").model_dump(mode="json")
    (tmp_path / "annual_filing.json").write_text(json.dumps(custom), encoding="utf-8")
    (tmp_path / "broken.json").write_text("{", encoding="utf-8")

    registry = TemplateRegistry.from_settings(build_settings(templates_path=str(tmp_path)))

    assert "annual_filing" in registry
    assert "business_onboarding" in registry
    assert isinstance(registry.get("annual_filing"), TaskTemplate)
