from __future__ import annotations

import asyncio
import weakref


class KeyedLocks:
    """One ``asyncio.Lock`` per key, kept only while a holder or waiter references it.

    Callers must keep the returned lock in a local for as long as they use it; an
    unreferenced lock is dropped, and the next call for that key creates a new one.
    """

    def __init__(self) -> None:
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    def lock(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def __len__(self) -> int:
        return len(self._locks)


__all__ = ["KeyedLocks"]
