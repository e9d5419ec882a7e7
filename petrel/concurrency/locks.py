"""Name-scoped in-memory locks for concurrency control.

Three independent lock maps:
- workload locks: every transition on a workload name (deploy, update
  job creation/finalization, rollback, restart, destroy)
- volume locks: create/upload/delete of a volume, and attaching it
- tenant locks: quota ledger reads and writes

Lock order is always workload -> volumes (sorted) -> tenant.

Note: These locks only work within a single process/instance.
"""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Iterable
from contextlib import AsyncExitStack, asynccontextmanager


class _LockMap:
    """Lazily created asyncio.Lock per key."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._guard = asyncio.Lock()

    async def get(self, key: str) -> asyncio.Lock:
        async with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = asyncio.Lock()
                self._locks[key] = lock
            return lock

    async def cleanup(self, key: str) -> None:
        async with self._guard:
            lock = self._locks.get(key)
            # Never drop a lock someone is holding or waiting on
            if lock is not None and not lock.locked():
                del self._locks[key]

    def reset(self) -> None:
        self._locks = {}
        self._guard = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._locks)


_workload_locks = _LockMap()
_volume_locks = _LockMap()
_tenant_locks = _LockMap()


async def get_workload_lock(name: str) -> asyncio.Lock:
    """Get or create the lock serializing transitions on a workload name."""
    return await _workload_locks.get(name)


async def cleanup_workload_lock(name: str) -> None:
    """Drop the lock of a destroyed workload (no-op while held)."""
    await _workload_locks.cleanup(name)


async def get_volume_lock(name: str) -> asyncio.Lock:
    """Get or create the lock serializing operations on a volume name."""
    return await _volume_locks.get(name)


async def cleanup_volume_lock(name: str) -> None:
    """Drop the lock of a deleted volume (no-op while held)."""
    await _volume_locks.cleanup(name)


async def get_tenant_lock(tenant: str) -> asyncio.Lock:
    """Get or create the single-writer lock of a tenant's quota ledger."""
    return await _tenant_locks.get(tenant)


@asynccontextmanager
async def volume_locks(names: Iterable[str]) -> AsyncIterator[None]:
    """Hold the locks of several volumes, acquired in sorted order."""
    async with AsyncExitStack() as stack:
        for name in sorted(set(names)):
            lock = await get_volume_lock(name)
            await stack.enter_async_context(lock)
        yield


def get_lock_count() -> int:
    """Get current number of locks (for testing/metrics)."""
    return len(_workload_locks) + len(_volume_locks) + len(_tenant_locks)


def reset_locks() -> None:
    """Forget every lock. Locks bind to the event loop that first contends
    them, so each fresh loop (e.g. per test) must start from empty maps."""
    for lock_map in (_workload_locks, _volume_locks, _tenant_locks):
        lock_map.reset()
