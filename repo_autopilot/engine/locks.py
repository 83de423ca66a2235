"""Per-entity serialization of event handling.

Webhook deliveries for the same issue or pull request must not interleave,
otherwise two handlers can read the same record and both advance
``current_action_index`` or ``fix_attempts``. ``KeyedLock`` hands out one
``asyncio.Lock`` per key, so different entities still run concurrently.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog

log = structlog.get_logger(__name__)


class KeyedLock:
    """A lazily populated map of per-key asyncio locks."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._locks_lock = asyncio.Lock()

    async def _get_lock(self, key: str) -> asyncio.Lock:
        async with self._locks_lock:
            if key not in self._locks:
                self._locks[key] = asyncio.Lock()
            return self._locks[key]

    def locked(self, key: str) -> bool:
        """Check if ``key`` is currently held."""
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        """Hold the lock for one key for the duration of the block."""
        lock = await self._get_lock(key)
        if lock.locked():
            log.debug("entity_lock_wait", key=key)
        async with lock:
            yield
