from __future__ import annotations

from typing import Any

import pytest
from langchain_core.messages import AIMessage, SystemMessage

from compliflow.core.errors import LLMUnavailableError
from compliflow.services.llm import LLMRequest, OllamaLLMService
from tests.helpers.stubs import build_settings


class _FakeChatModel:
    def __init__(self, *results: Any) -> None:
        self._results = list(results)
        self.calls: list[tuple[list[Any], dict[str, Any]]] = []

    async def ainvoke(self, messages: list[Any], **kwargs: Any) -> Any:
        self.calls.append((messages, kwargs))
        result = self._results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.mark.asyncio
async def test_complete_passes_schema_and_options() -> None:
    message = AIMessage(
        content='{"phases": []}',
        usage_metadata={"input_tokens": 12, "output_tokens": 4, "total_tokens": 16},
    )
    client = _FakeChatModel(message)
    service = OllamaLLMService.from_settings(build_settings(), client=client)

    response = await service.complete(
        LLMRequest(
            prompt="plan",
            system_prompt="be precise",
            response_format="json",
            schema={"type": "object"},
            temperature=0.0,
            max_tokens=256,
        )
    )

    messages, kwargs = client.calls[0]
    assert isinstance(messages[0], SystemMessage)
    assert kwargs["format"] == {"type": "object"}
    assert kwargs["options"] == {"temperature": 0.0, "num_predict": 256}
    assert response.content == '{"phases": []}'
    assert response.usage["total_tokens"] == 16
    assert response.model == "llama3.1"


@pytest.mark.asyncio
async def test_transient_failure_is_retried() -> None:
    client = _FakeChatModel(ConnectionError("reset"), AIMessage(content="ok"))
    settings = build_settings(llm={"max_retries": 2, "base_backoff_seconds": 0.0, "max_backoff_seconds": 0.0})
    service = OllamaLLMService.from_settings(settings, client=client)

    response = await service.complete(LLMRequest(prompt="hi", response_format="json"))

    assert response.content == "ok"
    assert len(client.calls) == 2
    assert client.calls[1][1]["format"] == "json"


@pytest.mark.asyncio
async def test_exhausted_retries_raise_llm_unavailable() -> None:
    client = _FakeChatModel(ConnectionError("refused"), ConnectionError("refused"))
    settings = build_settings(llm={"max_retries": 2, "base_backoff_seconds": 0.0, "max_backoff_seconds": 0.0})
    service = OllamaLLMService.from_settings(settings, client=client)

    with pytest.raises(LLMUnavailableError):
        await service.complete(LLMRequest(prompt="hi"))
