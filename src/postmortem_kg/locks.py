"""Per-incident concurrency guards.

Two flavours are provided:

- ``InFlightRegistry`` rejects a second concurrent run for the same key with
  ``IncidentBusyError`` (used for postmortem generation, where interleaved
  merges would corrupt the record).
- ``KeyedLocks`` serializes work for the same key behind an ``asyncio.Lock``
  (used for recommendation refreshes, where the second caller can reuse the
  first caller's freshly cached result).

Both are process-local. Work for different keys never contends.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)


class IncidentBusyError(Exception):
    """Another operation of the same kind is already running for this incident."""

    def __init__(self, operation: str, incident_id: str):
        self.operation = operation
        self.incident_id = incident_id
        super().__init__(f"{operation} already in progress for incident {incident_id}")


class InFlightRegistry:
    """Tracks which (operation, incident) pairs are currently running."""

    def __init__(self, operation: str):
        self.operation = operation
        self._active: set[Hashable] = set()

    def is_busy(self, key: Hashable) -> bool:
        return key in self._active

    @asynccontextmanager
    async def claim(self, key: Hashable) -> AsyncIterator[None]:
        """Claim ``key`` for the duration of the block.

        Raises:
            IncidentBusyError: If ``key`` is already claimed
        """
        # Check-and-add happens without an await in between, so it is atomic
        # with respect to other tasks on the same event loop.
        if key in self._active:
            logger.warning(f"Rejected concurrent {self.operation} for {key}")
            raise IncidentBusyError(self.operation, str(key))
        self._active.add(key)
        try:
            yield
        finally:
            self._active.discard(key)


class KeyedLocks:
    """One ``asyncio.Lock`` per key, dropped once nobody holds or waits on it."""

    def __init__(self):
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._waiters: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)
