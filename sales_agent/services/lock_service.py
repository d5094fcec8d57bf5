"""Per-user serialization for message processing.

One ``asyncio.Lock`` per key, created on demand and dropped once nobody holds
or waits on it. ``asyncio.Lock`` wakes waiters in arrival order, so actions
queued for the same key run FIFO.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import AsyncIterator, Awaitable, Callable, TypeVar

from sales_agent.logging_config import get_logger

logger = get_logger("lock_service")

T = TypeVar("T")


@dataclass
class _KeyLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class KeyedSerialLock:
    """Mutual exclusion keyed by user identity."""

    def __init__(self):
        self._locks: dict[str, _KeyLock] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = _KeyLock()
            self._locks[key] = entry
        if entry.lock.locked():
            logger.debug(f"Queued behind in-flight turn for {key} ({entry.users} ahead)")
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(key) is entry:
                del self._locks[key]

    async def with_lock(self, key: str, action: Callable[[], Awaitable[T]]) -> T:
        """Run ``action`` once no other action for ``key`` is in flight.

        Failures propagate to the caller after the lock is released, so the
        next queued action for the key still runs.
        """
        async with self.hold(key):
            return await action()

    def active_keys(self) -> list[str]:
        return list(self._locks)

    def is_locked(self, key: str) -> bool:
        entry = self._locks.get(key)
        return entry is not None and entry.lock.locked()
