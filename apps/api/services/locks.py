"""Per-principal asyncio locks for ledger read-modify-write sections."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Iterable, List, Tuple


class KeyedLock:
    """Hands out one asyncio.Lock per key; idle locks are dropped."""

    def __init__(self) -> None:
        self._locks: Dict[str, Tuple[asyncio.Lock, int]] = {}

    def _acquire_entry(self, key: str) -> asyncio.Lock:
        lock, waiters = self._locks.get(key, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._locks[key] = (lock, waiters + 1)
        return lock

    def _release_entry(self, key: str) -> None:
        lock, waiters = self._locks[key]
        if waiters <= 1:
            del self._locks[key]
        else:
            self._locks[key] = (lock, waiters - 1)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._acquire_entry(key)
        try:
            async with lock:
                yield
        finally:
            self._release_entry(key)

    @asynccontextmanager
    async def hold_many(self, keys: Iterable[str]) -> AsyncIterator[None]:
        # Sorted acquisition keeps two multi-key holders from deadlocking.
        ordered: List[str] = sorted(set(keys))
        acquired: List[str] = []
        try:
            for key in ordered:
                lock = self._acquire_entry(key)
                try:
                    await lock.acquire()
                except BaseException:
                    self._release_entry(key)
                    raise
                acquired.append(key)
            yield
        finally:
            for key in reversed(acquired):
                lock, _ = self._locks[key]
                lock.release()
                self._release_entry(key)

    def __len__(self) -> int:
        return len(self._locks)
