from __future__ import annotations

import asyncio

import pytest

from compliflow.core.config import EventStoreSettings
from compliflow.core.errors import EventAppendError
from compliflow.orchestration.recorder import EntryRecorder
from compliflow.orchestration.store import InMemoryEventStore
from compliflow.schemas.context import Actor, ContextEntry
from compliflow.schemas.operations import StatusUpdated, TaskCreated
from compliflow.schemas.a2a import TenantIdentity
from tests.helpers.stubs import FlakyEventStore


def _entry(context_id: str = "ctx-1", **data: object) -> ContextEntry:
    return ContextEntry(
        context_id=context_id,
        actor=Actor.system(),
        operation="note_added",
        data=dict(data),
        reasoning="test entry",
    )


def _created(context_id: str, tenant_id: str) -> ContextEntry:
    return ContextEntry.record(
        context_id,
        TaskCreated(template_id="tpl", tenant=TenantIdentity(tenant_id=tenant_id), template_snapshot={}),
        actor=Actor.system(),
        reasoning="created",
    )


@pytest.mark.asyncio
async def test_store_assigns_contiguous_sequence_numbers() -> None:
    store = InMemoryEventStore()

    sequences = [await store.append("ctx-1", _entry(index=index)) for index in range(3)]
    entries = await store.read("ctx-1")

    assert sequences == [1, 2, 3]
    assert [entry.sequence_number for entry in entries] == [1, 2, 3]


@pytest.mark.asyncio
async def test_append_is_idempotent_on_entry_id() -> None:
    store = InMemoryEventStore()
    entry = _entry(value=1)

    first = await store.append("ctx-1", entry)
    second = await store.append("ctx-1", entry)

    assert first == second == 1
    assert len(await store.read("ctx-1")) == 1


@pytest.mark.asyncio
async def test_append_rejects_entry_for_other_context() -> None:
    store = InMemoryEventStore()

    with pytest.raises(EventAppendError):
        await store.append("ctx-2", _entry("ctx-1"))


@pytest.mark.asyncio
async def test_concurrent_appends_never_share_a_sequence_number() -> None:
    store = InMemoryEventStore()

    await asyncio.gather(*(store.append("ctx-1", _entry(index=index)) for index in range(50)))
    sequences = [entry.sequence_number for entry in await store.read("ctx-1")]

    assert sorted(sequences) == list(range(1, 51))


@pytest.mark.asyncio
async def test_read_from_sequence_and_isolated_copies() -> None:
    store = InMemoryEventStore()
    for index in range(4):
        await store.append("ctx-1", _entry(index=index))

    tail = await store.read("ctx-1", from_sequence=3)
    tail[0].data["index"] = 99  # mutating a copy never reaches the log

    assert [entry.sequence_number for entry in tail] == [3, 4]
    assert (await store.read("ctx-1", from_sequence=3))[0].data["index"] == 2


@pytest.mark.asyncio
async def test_list_contexts_is_scoped_to_tenant() -> None:
    store = InMemoryEventStore()
    await store.append("ctx-a", _created("ctx-a", "tenant-a"))
    await store.append("ctx-b", _created("ctx-b", "tenant-b"))

    assert await store.list_contexts("tenant-a") == ["ctx-a"]
    assert await store.list_contexts("tenant-c") == []


@pytest.mark.asyncio
async def test_recorder_retries_transient_failures_with_stable_entry_id() -> None:
    store = FlakyEventStore(failures=1, lose_ack=True)
    recorder = EntryRecorder(store, settings=EventStoreSettings(append_retry_attempts=3, append_backoff_seconds=0))

    stored = await recorder.append(ContextEntry.record("ctx-1", StatusUpdated(status="in_progress"), actor=Actor.system(), reasoning="go"))

    assert stored.sequence_number == 1
    assert store.append_calls == 2
    assert len(await store.read("ctx-1")) == 1


@pytest.mark.asyncio
async def test_recorder_raises_after_exhausting_retries() -> None:
    store = FlakyEventStore(failures=5)
    recorder = EntryRecorder(store, settings=EventStoreSettings(append_retry_attempts=2, append_backoff_seconds=0))

    with pytest.raises(EventAppendError):
        await recorder.append(_entry())

    assert store.append_calls == 2
    assert await store.read("ctx-1") == []
