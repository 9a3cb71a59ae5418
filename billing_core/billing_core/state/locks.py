"""Per-subscription mutual exclusion for read-modify-write sequences.

Every handler and recovery operation loads the whole subscription record,
changes fields and saves the whole record back.  Two such sequences for the
same subscription must not interleave, so each one runs while holding the
lock for that subscription's key.

The registry serialises writers inside one process.  Across processes the
repository's ``load_for_update`` row lock and the table's version column
provide the same guarantee at the database.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class SubscriptionLocks:
    """Registry of ``asyncio.Lock`` objects keyed by subscription reference.

    Locks are created on first use and dropped once no task holds or waits
    on them, so the registry does not grow with the number of subscriptions
    ever seen.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}
        self._guard = asyncio.Lock()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for *key* for the duration of the ``async with`` block."""
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            self._waiters[key] = self._waiters.get(key, 0) + 1

        try:
            async with lock:
                logger.debug("Acquired subscription lock %s", key)
                yield
        finally:
            async with self._guard:
                remaining = self._waiters[key] - 1
                if remaining:
                    self._waiters[key] = remaining
                else:
                    del self._waiters[key]
                    del self._locks[key]

    def is_locked(self, key: str) -> bool:
        """Return ``True`` while some task holds the lock for *key*."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @property
    def active_keys(self) -> int:
        """Number of keys currently held or awaited."""
        return len(self._locks)
