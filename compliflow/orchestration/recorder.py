from __future__ import annotations

import asyncio

from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from ..core.config import EventStoreSettings
from ..core.errors import EventAppendError, EventStoreUnavailable
from ..core.logging import get_logger
from ..core.metrics import increment_event_append
from ..schemas.context import ContextEntry
from ..services.notifications import ContextNotifier
from .store import EventStore

logger = get_logger(name=__name__)

_RETRYABLE = (EventStoreUnavailable, OSError, asyncio.TimeoutError)


class EntryRecorder:
    """Appends entries with idempotent retries and notifies subscribers afterwards.

    Retries reuse the entry as built by the caller, so its ``entry_id`` is stable and a
    write that succeeded before a lost acknowledgement is not duplicated.
    """

    def __init__(
        self,
        store: EventStore,
        *,
        settings: EventStoreSettings,
        notifier: ContextNotifier | None = None,
    ) -> None:
        self._store = store
        self._settings = settings
        self._notifier = notifier

    @property
    def store(self) -> EventStore:
        return self._store

    async def append(self, entry: ContextEntry) -> ContextEntry:
        try:
            sequence = await self._append_with_retry(entry)
        except (RetryError, *_RETRYABLE) as exc:
            increment_event_append(outcome="failed")
            logger.error(
                "context_entry_append_exhausted",
                context_id=entry.context_id,
                entry_id=entry.entry_id,
                operation=entry.operation,
                error=str(exc),
            )
            raise EventAppendError(
                f"Could not append {entry.operation} entry",
                details={"entry_id": entry.entry_id},
            ) from exc

        increment_event_append(outcome="appended")
        stored = entry.sequenced(sequence)
        if self._notifier is not None:
            await self._notifier.publish(stored)
        return stored

    async def _append_with_retry(self, entry: ContextEntry) -> int:
        attempts = max(1, self._settings.append_retry_attempts)
        backoff = self._settings.append_backoff_seconds
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(attempts),
            wait=wait_random_exponential(multiplier=backoff, max=max(backoff * 8, backoff)),
            retry=retry_if_exception_type(_RETRYABLE),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    increment_event_append(outcome="retried")
                    logger.info(
                        "context_entry_append_retry",
                        context_id=entry.context_id,
                        entry_id=entry.entry_id,
                        attempt=attempt.retry_state.attempt_number,
                    )
                return await self._store.append(entry.context_id, entry)
        raise EventAppendError("Append retry loop ended without a result")  # pragma: no cover


__all__ = ["EntryRecorder"]
