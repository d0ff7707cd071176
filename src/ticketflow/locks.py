"""Per-path write locks.

Concurrent writers to the same absolute path are queued strictly in arrival
order (``asyncio.Lock`` wakes waiters FIFO). A writer that raises still
releases the lock, so one failed write never blocks the ones behind it.
Entries are dropped as soon as no writer holds or waits for a path.
"""

from __future__ import annotations

import asyncio
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator


class PathWriteLocks:
    """Mutex per absolute file path; one instance is shared by all writers."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, int] = {}

    @staticmethod
    def _key(path: Path | str) -> str:
        return os.path.abspath(os.fspath(path))

    @asynccontextmanager
    async def lock(self, path: Path | str) -> AsyncIterator[None]:
        key = self._key(path)
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._holders[key] -= 1
            if self._holders[key] == 0:
                del self._holders[key]
                del self._locks[key]

    async def write_text(self, path: Path | str, text: str) -> None:
        """Write ``text`` to ``path`` (creating parent dirs) under the path's lock."""
        async with self.lock(path):
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, _write_file, Path(path), text)

    def is_locked(self, path: Path | str) -> bool:
        lock = self._locks.get(self._key(path))
        return lock is not None and lock.locked()

    def __len__(self) -> int:
        return len(self._locks)


def _write_file(path: Path, text: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
