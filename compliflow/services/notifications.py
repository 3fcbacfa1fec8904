from __future__ import annotations

import asyncio
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable

import httpx

from ..core.config import NotificationSettings
from ..core.logging import get_logger
from ..schemas.context import ContextEntry
from ..utils.json_encoding import encode_jsonb

logger = get_logger(name=__name__)

Subscriber = Callable[[ContextEntry], Awaitable[None]]


class ContextNotifier:
    """Fans appended entries out to subscribers of their context.

    Delivery is best effort: a failing subscriber or webhook is logged and never
    affects the append that triggered it.
    """

    def __init__(self, settings: NotificationSettings, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._subscribers: set[Subscriber] = set()
        self._queues: dict[str, set[asyncio.Queue[ContextEntry]]] = defaultdict(set)
        self._http_client = http_client
        self._deliveries: set[asyncio.Task[None]] = set()

    def subscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.add(subscriber)

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers.discard(subscriber)

    @asynccontextmanager
    async def listen(self, context_id: str) -> AsyncIterator[asyncio.Queue[ContextEntry]]:
        queue: asyncio.Queue[ContextEntry] = asyncio.Queue(maxsize=self._settings.subscriber_queue_size)
        self._queues[context_id].add(queue)
        try:
            yield queue
        finally:
            listeners = self._queues.get(context_id)
            if listeners is not None:
                listeners.discard(queue)
                if not listeners:
                    self._queues.pop(context_id, None)

    def listener_count(self, context_id: str) -> int:
        return len(self._queues.get(context_id, ()))

    async def publish(self, entry: ContextEntry) -> None:
        """Queue ``entry`` for listeners, await in-process subscribers, post the webhook in the background."""
        if not self._settings.enabled:
            return

        for queue in list(self._queues.get(entry.context_id, ())):
            if queue.full():
                # Listeners recover dropped entries from the log; see ``entries_since``.
                queue.get_nowait()
                logger.warning("context_listener_lagging", context_id=entry.context_id)
            queue.put_nowait(entry)

        if self._settings.webhook_url:
            delivery = asyncio.create_task(self._post_webhook(entry))
            self._deliveries.add(delivery)
            delivery.add_done_callback(self._delivery_done)

        if not self._subscribers:
            return
        results = await asyncio.gather(
            *(self._safe_invoke(subscriber, entry) for subscriber in list(self._subscribers)),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, Exception):
                logger.warning("context_notification_error", context_id=entry.context_id, error=str(result))

    @property
    def pending_deliveries(self) -> int:
        return len(self._deliveries)

    async def drain(self) -> None:
        """Wait for webhook deliveries still in flight."""
        while self._deliveries:
            await asyncio.gather(*list(self._deliveries), return_exceptions=True)

    async def aclose(self) -> None:
        await self.drain()

    def _delivery_done(self, delivery: asyncio.Task[None]) -> None:
        self._deliveries.discard(delivery)
        if not delivery.cancelled() and delivery.exception() is not None:
            logger.warning("context_webhook_failed", error=str(delivery.exception()))

    async def _safe_invoke(self, subscriber: Subscriber, entry: ContextEntry) -> None:
        try:
            await subscriber(entry)
        except Exception as exc:
            logger.warning(
                "context_subscriber_failed",
                subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                error=str(exc),
            )

    async def _post_webhook(self, entry: ContextEntry) -> None:
        body = encode_jsonb({"context_id": entry.context_id, "entry": entry.model_dump(mode="json")})
        headers = {"Content-Type": "application/json"}
        try:
            if self._http_client is not None:
                response = await self._http_client.post(self._settings.webhook_url, content=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._settings.timeout_seconds) as client:
                    response = await client.post(self._settings.webhook_url, content=body, headers=headers)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("context_webhook_failed", context_id=entry.context_id, error=str(exc))


async def log_entry(entry: ContextEntry) -> None:
    logger.info(
        "context_entry_appended",
        context_id=entry.context_id,
        sequence=entry.sequence_number,
        operation=entry.operation,
        actor=entry.actor.id,
    )


async def entries_since(
    entry: ContextEntry,
    *,
    last_sequence: int,
    read: Callable[[int], Awaitable[list[ContextEntry]]],
) -> list[ContextEntry]:
    """Entries a listener must deliver next, given the entry it just dequeued.

    A sequence gap means a lagging queue dropped entries or concurrent appends were
    published out of order; the missing range is read back from the log.
    """
    sequence = entry.sequence_number or 0
    if sequence <= last_sequence:
        return []
    if sequence == last_sequence + 1:
        return [entry]
    logger.info(
        "context_stream_gap_recovered",
        context_id=entry.context_id,
        after_sequence=last_sequence,
        received_sequence=sequence,
    )
    return await read(last_sequence + 1)


__all__ = ["ContextNotifier", "Subscriber", "entries_since", "log_entry"]
