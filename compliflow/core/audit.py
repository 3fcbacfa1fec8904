from __future__ import annotations

import hashlib
import re
from collections import deque
from datetime import datetime, timezone
from time import perf_counter
from typing import Any, Iterable, Protocol

from fastapi import Request
from pydantic import BaseModel, ConfigDict, Field
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

from .logging import get_logger


class AuditRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    task_id: str
    agent_role: str
    action: str
    tenant_id: str
    user_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    recorded_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AuditSink(Protocol):
    async def record(self, record: AuditRecord) -> None:
        ...


class StructlogAuditSink:
    """Writes audit records to the ``audit`` logger."""

    def __init__(self) -> None:
        self._logger = get_logger(name="audit")

    async def record(self, record: AuditRecord) -> None:
        self._logger.info("agent_audit", **record.model_dump(mode="json"))


class InMemoryAuditSink:
    def __init__(self, *, max_records: int = 10_000) -> None:
        self._records: deque[AuditRecord] = deque(maxlen=max_records)

    @property
    def records(self) -> list[AuditRecord]:
        return list(self._records)

    def actions(self, task_id: str | None = None) -> list[str]:
        return [record.action for record in self._records if task_id is None or record.task_id == task_id]

    async def record(self, record: AuditRecord) -> None:
        self._records.append(record)


class AuditLoggingMiddleware(BaseHTTPMiddleware):
    """One ``api_request_audited`` line per API call, tagged with tenant and context.

    Request bodies are reduced to a digest so user answers never land in the log.
    """

    _CONTEXT_PATH = re.compile(r"/contexts/(?P<context_id>[^/]+)")

    def __init__(self, app: ASGIApp, *, include_prefixes: Iterable[str] = ("/api/",)) -> None:
        super().__init__(app)
        self._prefixes = tuple(include_prefixes)
        self._logger = get_logger(name="audit")

    def _audited(self, path: str) -> bool:
        return not self._prefixes or path.startswith(self._prefixes)

    async def dispatch(self, request: Request, call_next) -> Response:  # type: ignore[override]
        path = request.url.path
        if not self._audited(path):
            return await call_next(request)

        body = await request.body() if request.method in {"POST", "PUT", "PATCH", "DELETE"} else b""
        started = perf_counter()
        response = await call_next(request)
        match = self._CONTEXT_PATH.search(path)
        self._logger.info(
            "api_request_audited",
            method=request.method,
            path=path,
            status=response.status_code,
            tenant_id=request.headers.get("x-tenant-id"),
            user_id=request.headers.get("x-user-id"),
            context_id=match.group("context_id") if match else None,
            body_sha256=hashlib.sha256(body).hexdigest() if body else None,
            duration_ms=round((perf_counter() - started) * 1000, 3),
        )
        return response


__all__ = [
    "AuditLoggingMiddleware",
    "AuditRecord",
    "AuditSink",
    "InMemoryAuditSink",
    "StructlogAuditSink",
]
