from __future__ import annotations

import httpx
import pytest

from compliflow.core.metrics import (
    increment_fallback_decision,
    mark_round_completed,
    record_plan_metrics,
)
from compliflow.main import create_app
from tests.helpers.stubs import build_harness


@pytest.mark.asyncio
async def test_metrics_endpoint_includes_orchestration_series() -> None:
    app = create_app(container=build_harness().container)

    mark_round_completed(outcome="complete", latency=0.25)
    increment_fallback_decision(decision="retry")
    record_plan_metrics(source="template_default", status="accepted", phases=2)

    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.get("/metrics")
    finally:
        await transport.aclose()

    assert response.status_code == 200
    assert response.headers.get("content-type", "").startswith("text/plain")
    body = response.text
    assert 'compliflow_orchestration_rounds_total{outcome="complete"}' in body
    assert 'compliflow_fallback_decisions_total{decision="retry"}' in body
    assert 'compliflow_planner_outcomes_total{source="template_default",status="accepted"}' in body
