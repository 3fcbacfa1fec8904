from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol, Sequence

from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage
from langchain_ollama import ChatOllama
from tenacity import AsyncRetrying, stop_after_attempt, wait_random_exponential

from ..core.config import Settings
from ..core.errors import LLMUnavailableError
from ..core.logging import get_logger

logger = get_logger(name=__name__)


@dataclass(slots=True)
class LLMRequest:
    prompt: str
    model: str | None = None
    system_prompt: str | None = None
    response_format: Literal["text", "json"] = "text"
    schema: dict[str, Any] | None = None
    temperature: float | None = None
    max_tokens: int | None = None


@dataclass(slots=True)
class LLMResponse:
    content: str
    usage: dict[str, int] = field(default_factory=dict)
    model: str | None = None


class LLMClient(Protocol):
    async def complete(self, request: LLMRequest) -> LLMResponse:
        ...


def _build_base_url(host: str, port: int) -> str:
    if ":" in host.rsplit("/", maxsplit=1)[-1]:
        return host.rstrip("/")
    return f"{host.rstrip('/')}:{port}"


def _messages_from_request(request: LLMRequest) -> Sequence[BaseMessage]:
    messages: list[BaseMessage] = []
    if request.system_prompt:
        messages.append(SystemMessage(content=request.system_prompt))
    messages.append(HumanMessage(content=request.prompt))
    return messages


def _extract_content(result: Any) -> str:
    content = result.content if hasattr(result, "content") else result
    if isinstance(content, list):
        return "".join(item.get("text", "") if isinstance(item, dict) else str(item) for item in content)
    return str(content)


def _extract_usage(result: Any) -> dict[str, int]:
    if not isinstance(result, AIMessage) or not result.usage_metadata:
        return {}
    usage = result.usage_metadata
    return {
        "input_tokens": int(usage.get("input_tokens", 0)),
        "output_tokens": int(usage.get("output_tokens", 0)),
        "total_tokens": int(usage.get("total_tokens", 0)),
    }


class OllamaLLMService:
    """LangChain ChatOllama client implementing the ``complete`` boundary."""

    def __init__(
        self,
        settings: Settings,
        *,
        client: Any | None = None,
        model: str | None = None,
    ) -> None:
        self._settings = settings
        self._model = model or settings.ollama.model
        self._clients: dict[str, Any] = {}
        if client is not None:
            self._clients[self._model] = client

    @classmethod
    def from_settings(cls, settings: Settings, *, client: Any | None = None) -> "OllamaLLMService":
        return cls(settings, client=client)

    def _client_for(self, model: str) -> Any:
        client = self._clients.get(model)
        if client is None:
            base_url = _build_base_url(self._settings.ollama.host, self._settings.ollama.port)
            client = ChatOllama(model=model, base_url=base_url)
            self._clients[model] = client
        return client

    async def complete(self, request: LLMRequest) -> LLMResponse:
        model = request.model or self._model
        client = self._client_for(model)
        messages = _messages_from_request(request)

        options: dict[str, Any] = {}
        if request.temperature is not None:
            options["temperature"] = request.temperature
        if request.max_tokens is not None:
            options["num_predict"] = request.max_tokens
        call_kwargs: dict[str, Any] = {}
        if options:
            call_kwargs["options"] = options
        if request.schema is not None:
            call_kwargs["format"] = request.schema
        elif request.response_format == "json":
            call_kwargs["format"] = "json"

        retry = self._settings.llm
        timeout = self._settings.ollama.request_timeout_seconds
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(retry.max_retries),
                wait=wait_random_exponential(multiplier=retry.base_backoff_seconds, max=retry.max_backoff_seconds),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.warning(
                            "llm_generation_retry",
                            model=model,
                            attempt=attempt.retry_state.attempt_number,
                            max_attempts=retry.max_retries,
                        )
                    result = await asyncio.wait_for(client.ainvoke(messages, **call_kwargs), timeout=timeout)
                    return LLMResponse(content=_extract_content(result), usage=_extract_usage(result), model=model)
        except Exception as exc:
            logger.error("llm_generation_failed", model=model, error=str(exc), attempts=retry.max_retries)
            raise LLMUnavailableError(f"LLM {model} unavailable after {retry.max_retries} attempts") from exc
        raise LLMUnavailableError(f"LLM {model} returned no result")  # pragma: no cover


__all__ = ["LLMClient", "LLMRequest", "LLMResponse", "OllamaLLMService"]
