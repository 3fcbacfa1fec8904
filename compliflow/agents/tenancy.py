"""Tenant-scoped data handles.

A handle is derived from the calling user's token and only ever sees that user's
tenant. Handles are revoked when the agent execution that obtained them ends.
"""

from __future__ import annotations

import copy
from collections import defaultdict
from typing import Any, Protocol

import httpx

from ..core.config import TenantDataSettings
from ..core.errors import TenantAccessDenied, TenantTokenMissing
from ..core.logging import get_logger

logger = get_logger(name=__name__)


class TenantDataHandle(Protocol):
    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        ...

    async def put(self, collection: str, key: str, value: dict[str, Any]) -> None:
        ...

    async def query(self, collection: str, **filters: Any) -> list[dict[str, Any]]:
        ...

    def revoke(self) -> None:
        ...


class TenantDataHandleFactory(Protocol):
    def for_token(self, user_token: str) -> TenantDataHandle:
        ...


class _RevocableHandle:
    def __init__(self) -> None:
        self._revoked = False

    def revoke(self) -> None:
        self._revoked = True

    def _check(self) -> None:
        if self._revoked:
            raise TenantAccessDenied("Tenant data handle is no longer valid")


class InMemoryTenantDataHandle(_RevocableHandle):
    def __init__(self, store: "InMemoryTenantDataStore", tenant_id: str) -> None:
        super().__init__()
        self._store = store
        self._tenant_id = tenant_id

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        self._check()
        value = self._store._rows[self._tenant_id][collection].get(key)
        return copy.deepcopy(value) if value is not None else None

    async def put(self, collection: str, key: str, value: dict[str, Any]) -> None:
        self._check()
        self._store._rows[self._tenant_id][collection][key] = copy.deepcopy(value)

    async def query(self, collection: str, **filters: Any) -> list[dict[str, Any]]:
        self._check()
        rows = self._store._rows[self._tenant_id][collection].values()
        return [
            copy.deepcopy(row)
            for row in rows
            if all(row.get(name) == expected for name, expected in filters.items())
        ]


class InMemoryTenantDataStore:
    """Token-keyed tenant data used for local runs and tests."""

    def __init__(self) -> None:
        self._tokens: dict[str, str] = {}
        self._rows: dict[str, dict[str, dict[str, dict[str, Any]]]] = defaultdict(lambda: defaultdict(dict))
        self.issued: int = 0

    def register_token(self, user_token: str, tenant_id: str) -> None:
        self._tokens[user_token] = tenant_id

    def seed(self, tenant_id: str, collection: str, key: str, value: dict[str, Any]) -> None:
        self._rows[tenant_id][collection][key] = copy.deepcopy(value)

    def rows(self, tenant_id: str, collection: str) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(dict(self._rows[tenant_id][collection]))

    def for_token(self, user_token: str) -> InMemoryTenantDataHandle:
        if not user_token:
            raise TenantTokenMissing()
        tenant_id = self._tokens.get(user_token)
        if tenant_id is None:
            raise TenantAccessDenied()
        self.issued += 1
        return InMemoryTenantDataHandle(self, tenant_id)


class HttpTenantDataHandle(_RevocableHandle):
    """Talks to a row-level-secured REST data API with the user's own bearer token."""

    def __init__(self, client: httpx.AsyncClient, *, user_token: str, api_key: str | None) -> None:
        super().__init__()
        self._client = client
        self._headers = {"Authorization": f"Bearer {user_token}"}
        if api_key:
            self._headers["apikey"] = api_key

    async def get(self, collection: str, key: str) -> dict[str, Any] | None:
        rows = await self.query(collection, id=key)
        return rows[0] if rows else None

    async def put(self, collection: str, key: str, value: dict[str, Any]) -> None:
        self._check()
        response = await self._client.post(
            f"/{collection}",
            json={**value, "id": key},
            headers={**self._headers, "Prefer": "resolution=merge-duplicates"},
        )
        self._raise_for_status(response)

    async def query(self, collection: str, **filters: Any) -> list[dict[str, Any]]:
        self._check()
        params = {name: f"eq.{value}" for name, value in filters.items()}
        response = await self._client.get(f"/{collection}", params=params, headers=self._headers)
        self._raise_for_status(response)
        payload = response.json()
        return payload if isinstance(payload, list) else []

    @staticmethod
    def _raise_for_status(response: httpx.Response) -> None:
        if response.status_code in {401, 403}:
            raise TenantAccessDenied()
        response.raise_for_status()


class HttpTenantDataHandleFactory:
    def __init__(self, settings: TenantDataSettings, *, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._client = client or httpx.AsyncClient(base_url=settings.base_url, timeout=settings.timeout_seconds)

    def for_token(self, user_token: str) -> HttpTenantDataHandle:
        if not user_token:
            raise TenantTokenMissing()
        return HttpTenantDataHandle(self._client, user_token=user_token, api_key=self._settings.api_key)

    async def aclose(self) -> None:
        await self._client.aclose()


__all__ = [
    "HttpTenantDataHandle",
    "HttpTenantDataHandleFactory",
    "InMemoryTenantDataHandle",
    "InMemoryTenantDataStore",
    "TenantDataHandle",
    "TenantDataHandleFactory",
]
