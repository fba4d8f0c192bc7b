"""Bounded concurrency shared by every group folder."""

import asyncio
import weakref
from contextlib import AsyncExitStack, asynccontextmanager
from typing import AsyncIterator, Dict


class WorkerPool:
    """
    Caps concurrent I/O units globally and per folder.

    ``slot(folder_id, *paths)`` additionally takes a lock per path so two
    units never touch the same file at once. Path locks are taken in sorted
    order to avoid lock-order deadlocks between multi-path units.
    """

    def __init__(self, global_limit: int = 8, default_folder_limit: int = 4):
        self.global_limit = global_limit
        self.default_folder_limit = default_folder_limit
        self._global = asyncio.Semaphore(global_limit)
        self._folders: Dict[int, asyncio.Semaphore] = {}
        self._path_locks: weakref.WeakValueDictionary[tuple[int, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    def register(self, folder_id: int, limit: int | None = None) -> None:
        self._folders[folder_id] = asyncio.Semaphore(limit or self.default_folder_limit)

    def unregister(self, folder_id: int) -> None:
        self._folders.pop(folder_id, None)

    def path_lock(self, folder_id: int, path: str) -> asyncio.Lock:
        key = (folder_id, path)
        lock = self._path_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._path_locks[key] = lock
        return lock

    @asynccontextmanager
    async def slot(self, folder_id: int, *paths: str) -> AsyncIterator[None]:
        if folder_id not in self._folders:
            self.register(folder_id)
        async with AsyncExitStack() as stack:
            for path in sorted(set(paths)):
                await stack.enter_async_context(self.path_lock(folder_id, path))
            await stack.enter_async_context(self._global)
            await stack.enter_async_context(self._folders[folder_id])
            yield
