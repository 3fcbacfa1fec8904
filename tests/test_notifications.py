from __future__ import annotations

import asyncio
import json

import httpx
import pytest
from pytest_httpx import HTTPXMock

from compliflow.core.config import EventStoreSettings, NotificationSettings
from compliflow.orchestration.recorder import EntryRecorder
from compliflow.orchestration.store import InMemoryEventStore
from compliflow.schemas.context import Actor, ContextEntry
from compliflow.schemas.operations import StatusUpdated
from compliflow.services.notifications import ContextNotifier, entries_since


def _entry(context_id: str = "ctx-1", sequence: int = 1) -> ContextEntry:
    return ContextEntry(
        context_id=context_id,
        actor=Actor.system(),
        operation="status_updated",
        data={"status": "in_progress"},
        reasoning="progress",
    ).sequenced(sequence)


@pytest.mark.asyncio
async def test_listeners_receive_entries_for_their_context_only() -> None:
    notifier = ContextNotifier(NotificationSettings())

    async with notifier.listen("ctx-1") as queue:
        assert notifier.listener_count("ctx-1") == 1
        await notifier.publish(_entry("ctx-2"))
        await notifier.publish(_entry("ctx-1"))

        received = queue.get_nowait()
        assert received.context_id == "ctx-1"
        assert queue.empty()

    assert notifier.listener_count("ctx-1") == 0


@pytest.mark.asyncio
async def test_lagging_listener_drops_oldest_entry() -> None:
    notifier = ContextNotifier(NotificationSettings(subscriber_queue_size=2))

    async with notifier.listen("ctx-1") as queue:
        for sequence in (1, 2, 3):
            await notifier.publish(_entry(sequence=sequence))

        assert [queue.get_nowait().sequence_number for _ in range(2)] == [2, 3]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_publish() -> None:
    notifier = ContextNotifier(NotificationSettings())
    seen: list[int | None] = []

    async def _broken(entry: ContextEntry) -> None:
        raise RuntimeError("subscriber down")

    async def _collect(entry: ContextEntry) -> None:
        seen.append(entry.sequence_number)

    notifier.subscribe(_broken)
    notifier.subscribe(_collect)
    await notifier.publish(_entry())

    assert seen == [1]


@pytest.mark.asyncio
async def test_webhook_receives_entry(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_response(url="https://hooks.example.com/entries", status_code=204)
    notifier = ContextNotifier(NotificationSettings(webhook_url="https://hooks.example.com/entries"))

    await notifier.publish(_entry())
    await notifier.drain()

    request = httpx_mock.get_request()
    assert request is not None
    body = json.loads(request.content)
    assert body["context_id"] == "ctx-1"
    assert body["entry"]["operation"] == "status_updated"


@pytest.mark.asyncio
async def test_webhook_failure_is_swallowed(httpx_mock: HTTPXMock) -> None:
    httpx_mock.add_exception(httpx.ConnectError("refused"))
    notifier = ContextNotifier(NotificationSettings(webhook_url="https://hooks.example.com/entries"))

    await notifier.publish(_entry())
    await notifier.drain()

    assert len(httpx_mock.get_requests()) == 1


@pytest.mark.asyncio
async def test_publish_does_not_wait_for_a_slow_webhook() -> None:
    release = asyncio.Event()
    delivered: list[str] = []

    async def _slow_hook(request: httpx.Request) -> httpx.Response:
        await release.wait()
        delivered.append(json.loads(request.content)["entry"]["operation"])
        return httpx.Response(204)

    async with httpx.AsyncClient(transport=httpx.MockTransport(_slow_hook)) as client:
        notifier = ContextNotifier(
            NotificationSettings(webhook_url="https://hooks.example.com/entries"), http_client=client
        )

        await asyncio.wait_for(notifier.publish(_entry()), timeout=1.0)
        assert notifier.pending_deliveries == 1
        assert delivered == []

        release.set()
        await notifier.aclose()

    assert notifier.pending_deliveries == 0
    assert delivered == ["status_updated"]


@pytest.mark.asyncio
async def test_lagging_listener_recovers_dropped_entries_from_the_log() -> None:
    store = InMemoryEventStore()
    notifier = ContextNotifier(NotificationSettings(subscriber_queue_size=2))
    recorder = EntryRecorder(store, settings=EventStoreSettings(append_backoff_seconds=0), notifier=notifier)

    async with notifier.listen("ctx-1") as queue:
        for status in ("created", "in_progress", "complete"):
            await recorder.append(
                ContextEntry.record("ctx-1", StatusUpdated(status=status), actor=Actor.system(), reasoning=status)
            )

        first = queue.get_nowait()
        assert first.sequence_number == 2

        delivered = await entries_since(first, last_sequence=0, read=lambda start: store.read("ctx-1", start))
        assert [entry.sequence_number for entry in delivered] == [1, 2, 3]

        duplicate = queue.get_nowait()
        assert await entries_since(duplicate, last_sequence=3, read=lambda start: store.read("ctx-1", start)) == []


@pytest.mark.asyncio
async def test_contiguous_entry_is_delivered_without_reading_the_log() -> None:
    async def _unexpected_read(start: int) -> list[ContextEntry]:
        raise AssertionError("no gap, no read")

    entry = _entry(sequence=4)

    assert await entries_since(entry, last_sequence=3, read=_unexpected_read) == [entry]
