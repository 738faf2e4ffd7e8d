"""
reviewforge.services.locks — Per-repository exclusion
======================================================

One ``asyncio.Lock`` per repository id guarantees a repository is never
synced twice at once, and never synced while a recalculation is replaying
it.  Independent repositories proceed in parallel, bounded by a global
semaphore.

Locks live for the lifetime of the process and are only meaningful within
one event loop; this is a single-worker design.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager


class RepoLocks:
    """Registry of per-repository locks plus the global sync bound."""

    def __init__(self, max_concurrent_syncs: int = 4) -> None:
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self.sync_slots = asyncio.Semaphore(max(max_concurrent_syncs, 1))

    def lock_for(self, repository_id: int) -> asyncio.Lock:
        return self._locks[repository_id]

    def is_locked(self, repository_id: int) -> bool:
        """True while a sync or recalculation holds the repository."""
        lock = self._locks.get(repository_id)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, repository_id: int) -> AsyncIterator[None]:
        async with self.lock_for(repository_id):
            yield

    @asynccontextmanager
    async def hold_all(self, repository_ids: Iterable[int]) -> AsyncIterator[None]:
        """Acquire several repository locks in ascending id order.

        The fixed order prevents deadlock against any other caller that
        also acquires in ascending order.
        """
        async with AsyncExitStack() as stack:
            for repository_id in sorted(set(repository_ids)):
                await stack.enter_async_context(self.lock_for(repository_id))
            yield
