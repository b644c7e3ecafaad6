"""
Per-key asyncio locks.

Serializes orchestrator operations on the same shipment so two concurrent
tracking refreshes (poll and webhook, or two pollers) cannot interleave
writes to the tracking history. Works within one process; across processes
the optimistic version column on Shipment catches the race.
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Hashable

logger = logging.getLogger(__name__)


class KeyedLockManager:
    """
    Manages one lock per key.

    Locks are created on first use and dropped again when nobody holds or
    waits on them, so long-running workers do not accumulate a lock per
    shipment ever seen.
    """

    def __init__(self):
        self._locks: Dict[Hashable, asyncio.Lock] = {}
        self._waiters: Dict[Hashable, int] = {}
        self._lock = asyncio.Lock()  # Protects _locks dict creation

    @asynccontextmanager
    async def hold(self, key: Hashable):
        """Hold the lock for key for the duration of the block."""
        async with self._lock:
            lock = self._locks.setdefault(key, asyncio.Lock())
            self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            async with self._lock:
                self._waiters[key] -= 1
                if self._waiters[key] == 0:
                    del self._waiters[key]
                    self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class ShipmentLockManager(KeyedLockManager):
    """Lock manager keyed by shipment id."""

    def for_shipment(self, shipment_id: int):
        return self.hold(("shipment", shipment_id))
