from __future__ import annotations

import inspect
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Protocol

import asyncpg

from ..core.config import Settings
from ..core.errors import EventAppendError, EventStoreUnavailable
from ..core.logging import get_logger
from ..schemas.context import ContextEntry, CurrentState
from ..utils.json_encoding import decode_jsonb, encode_jsonb
from ..utils.locks import KeyedLocks
from .projection import project_state

logger = get_logger(name=__name__)


class EventStore(Protocol):
    async def append(self, context_id: str, entry: ContextEntry) -> int:
        """Persist ``entry`` and return its sequence number.

        Appending an entry whose ``entry_id`` is already stored returns the original
        sequence number without writing anything.
        """

    async def read(self, context_id: str, from_sequence: int | None = None) -> list[ContextEntry]:
        ...

    async def project(self, context_id: str) -> CurrentState:
        ...

    async def list_contexts(self, tenant_id: str) -> list[str]:
        ...


def _check_entry(context_id: str, entry: ContextEntry) -> None:
    if entry.context_id != context_id:
        raise EventAppendError("Entry belongs to a different context")


class InMemoryEventStore:
    """Process-local store. Appends to one context are serialised by a per-context lock."""

    def __init__(self) -> None:
        self._entries: dict[str, list[ContextEntry]] = defaultdict(list)
        self._by_entry_id: dict[str, ContextEntry] = {}
        self._tenants: dict[str, str] = {}
        self._locks = KeyedLocks()

    async def append(self, context_id: str, entry: ContextEntry) -> int:
        _check_entry(context_id, entry)
        async with self._locks.lock(context_id):
            existing = self._by_entry_id.get(entry.entry_id)
            if existing is not None:
                if existing.context_id != context_id:
                    raise EventAppendError("Entry id already used by another context")
                return existing.sequence_number or 0
            log = self._entries[context_id]
            sequence = (log[-1].sequence_number or 0) + 1 if log else 1
            stored = entry.sequenced(sequence)
            log.append(stored)
            self._by_entry_id[stored.entry_id] = stored
            if entry.operation == "task_created":
                tenant = entry.data.get("tenant")
                if isinstance(tenant, dict) and tenant.get("tenant_id"):
                    self._tenants[context_id] = str(tenant["tenant_id"])
            return sequence

    async def read(self, context_id: str, from_sequence: int | None = None) -> list[ContextEntry]:
        start = from_sequence or 0
        return [
            entry.model_copy(deep=True)
            for entry in self._entries.get(context_id, [])
            if (entry.sequence_number or 0) >= start
        ]

    async def project(self, context_id: str) -> CurrentState:
        return project_state(await self.read(context_id))

    async def list_contexts(self, tenant_id: str) -> list[str]:
        return [context_id for context_id, owner in self._tenants.items() if owner == tenant_id]

    async def close(self) -> None:
        return None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["InMemoryEventStore"]:
        yield self


class PostgresEventStore:
    """asyncpg-backed store.

    Each append takes a transaction-scoped advisory lock on the context id, so the
    ``max + 1`` sequence assignment is linearizable per context. The unique
    constraints on ``entry_id`` and ``(context_id, sequence_number)`` back that up.
    """

    _LOCK_CONTEXT = "SELECT pg_advisory_xact_lock(hashtext($1))"

    _FETCH_BY_ENTRY_ID = """
        SELECT context_id, sequence_number
        FROM context_entries
        WHERE entry_id = $1
    """

    _NEXT_SEQUENCE = """
        SELECT COALESCE(MAX(sequence_number), 0) + 1
        FROM context_entries
        WHERE context_id = $1
    """

    _INSERT = """
        INSERT INTO context_entries(
            entry_id,
            context_id,
            tenant_id,
            sequence_number,
            recorded_at,
            actor_type,
            actor_id,
            actor_version,
            operation,
            data,
            reasoning,
            trigger,
            corrects
        )
        VALUES($1, $2, $3, $4, $5, $6, $7, $8, $9, $10::jsonb, $11, $12::jsonb, $13)
    """

    _FETCH_TENANT = """
        SELECT tenant_id
        FROM context_entries
        WHERE context_id = $1 AND sequence_number = 1
    """

    _FETCH_ENTRIES = """
        SELECT entry_id, context_id, sequence_number, recorded_at, actor_type, actor_id,
               actor_version, operation, data, reasoning, trigger, corrects
        FROM context_entries
        WHERE context_id = $1 AND sequence_number >= $2
        ORDER BY sequence_number ASC
    """

    _LIST_CONTEXTS = """
        SELECT context_id
        FROM context_entries
        WHERE tenant_id = $1 AND sequence_number = 1
        ORDER BY recorded_at ASC
    """

    def __init__(self, pool: Any) -> None:
        self._pool_or_coroutine = pool
        self._pool: asyncpg.Pool | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PostgresEventStore":
        pool = asyncpg.create_pool(
            dsn=str(settings.postgres.dsn),
            min_size=settings.postgres.pool_min_size,
            max_size=settings.postgres.pool_max_size,
        )
        return cls(pool)

    async def append(self, context_id: str, entry: ContextEntry) -> int:
        _check_entry(context_id, entry)
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as connection:
                async with connection.transaction():
                    await connection.execute(self._LOCK_CONTEXT, context_id)
                    existing = await connection.fetchrow(self._FETCH_BY_ENTRY_ID, entry.entry_id)
                    if existing is not None:
                        if existing["context_id"] != context_id:
                            raise EventAppendError("Entry id already used by another context")
                        return int(existing["sequence_number"])
                    sequence = int(await connection.fetchval(self._NEXT_SEQUENCE, context_id))
                    tenant_id = await self._tenant_for(connection, context_id, entry, sequence)
                    await connection.execute(
                        self._INSERT,
                        entry.entry_id,
                        context_id,
                        tenant_id,
                        sequence,
                        entry.timestamp,
                        entry.actor.type.value,
                        entry.actor.id,
                        entry.actor.version,
                        entry.operation,
                        encode_jsonb(entry.data),
                        entry.reasoning,
                        encode_jsonb(entry.trigger.model_dump(mode="json")) if entry.trigger else None,
                        entry.corrects,
                    )
                    return sequence
        except (asyncpg.PostgresError, OSError) as exc:
            logger.warning("event_append_failed", context_id=context_id, entry_id=entry.entry_id, error=str(exc))
            raise EventStoreUnavailable("Event store rejected the append") from exc

    async def read(self, context_id: str, from_sequence: int | None = None) -> list[ContextEntry]:
        pool = await self._ensure_pool()
        try:
            async with pool.acquire() as connection:
                rows = await connection.fetch(self._FETCH_ENTRIES, context_id, from_sequence or 0)
        except (asyncpg.PostgresError, OSError) as exc:
            raise EventStoreUnavailable("Event store read failed") from exc
        return [self._row_to_entry(row) for row in rows]

    async def project(self, context_id: str) -> CurrentState:
        return project_state(await self.read(context_id))

    async def list_contexts(self, tenant_id: str) -> list[str]:
        pool = await self._ensure_pool()
        async with pool.acquire() as connection:
            rows = await connection.fetch(self._LIST_CONTEXTS, tenant_id)
        return [row["context_id"] for row in rows]

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["PostgresEventStore"]:
        try:
            await self._ensure_pool()
            yield self
        finally:
            await self.close()

    async def _tenant_for(self, connection: Any, context_id: str, entry: ContextEntry, sequence: int) -> str:
        if sequence == 1:
            tenant = entry.data.get("tenant")
            if isinstance(tenant, dict) and tenant.get("tenant_id"):
                return str(tenant["tenant_id"])
            raise EventAppendError("The first entry of a context must identify its tenant")
        return str(await connection.fetchval(self._FETCH_TENANT, context_id))

    @staticmethod
    def _row_to_entry(row: Any) -> ContextEntry:
        trigger = decode_jsonb(row["trigger"])
        return ContextEntry.model_validate(
            {
                "entry_id": row["entry_id"],
                "context_id": row["context_id"],
                "sequence_number": row["sequence_number"],
                "timestamp": row["recorded_at"],
                "actor": {
                    "type": row["actor_type"],
                    "id": row["actor_id"],
                    "version": row["actor_version"],
                },
                "operation": row["operation"],
                "data": decode_jsonb(row["data"]) or {},
                "reasoning": row["reasoning"],
                "trigger": trigger,
                "corrects": row["corrects"],
            }
        )

    async def _ensure_pool(self) -> asyncpg.Pool:
        if self._pool is not None:
            return self._pool
        candidate = self._pool_or_coroutine
        if inspect.isawaitable(candidate):
            try:
                candidate = await candidate
            except (asyncpg.PostgresError, OSError) as exc:
                raise EventStoreUnavailable("Could not connect to the event store") from exc
        if not isinstance(candidate, asyncpg.Pool):
            raise RuntimeError("Invalid asyncpg pool supplied to PostgresEventStore")
        self._pool = candidate
        return self._pool


def build_event_store(settings: Settings) -> InMemoryEventStore | PostgresEventStore:
    if settings.event_store.backend == "postgres":
        return PostgresEventStore.from_settings(settings)
    return InMemoryEventStore()


__all__ = ["EventStore", "InMemoryEventStore", "PostgresEventStore", "build_event_store"]
