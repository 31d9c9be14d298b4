"""Async wrapper for synchronous FileStorage implementations.

Delegates blocking I/O to a bounded ThreadPoolExecutor via
asyncio.run_in_executor(), keeping the FastAPI event loop unblocked.
"""

from __future__ import annotations

import asyncio
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import TYPE_CHECKING, Any

from tracelens_service.storage.base import StoredFile

if TYPE_CHECKING:
    from tracelens_service.storage.base import FileStorage


# Module-level executor shared across all AsyncFileStorage instances.
# Bounded so a burst of uploads cannot exhaust threads in the API process.
_storage_executor = ThreadPoolExecutor(
    max_workers=4,
    thread_name_prefix="storage-io",
)


class AsyncFileStorage:
    """Async facade over a synchronous FileStorage.

    Usage in FastAPI routes:
        storage = AsyncFileStorage(LocalFileStorage(settings.upload_dir))
        stored = await storage.save(content, "photo.jpg")
    """

    def __init__(self, storage: FileStorage) -> None:
        """Initialize the wrapper.

        Args:
            storage: Synchronous FileStorage implementation to wrap.
        """
        self._storage = storage

    @property
    def sync_storage(self) -> FileStorage:
        """The wrapped synchronous storage."""
        return self._storage

    async def _run_in_executor(self, fn: Any, *args: Any, **kwargs: Any) -> Any:
        """Run a synchronous function in the thread pool executor.

        Raises:
            Whatever fn raises (propagated across thread boundary).
        """
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            _storage_executor,
            partial(fn, *args, **kwargs),
        )

    async def save(self, content: bytes, original_name: str) -> StoredFile:
        """Async write of a new file.

        Returns:
            StoredFile with the generated filename, storage path and size.
        """
        result: StoredFile = await self._run_in_executor(
            self._storage.save, content, original_name
        )
        return result

    async def exists(self, path: str) -> bool:
        """Async existence check."""
        result: bool = await self._run_in_executor(self._storage.exists, path)
        return result

    async def read(self, path: str) -> bytes:
        """Async read of a stored file."""
        result: bytes = await self._run_in_executor(self._storage.read, path)
        return result

    async def delete(self, path: str) -> None:
        """Async delete of a stored file."""
        await self._run_in_executor(self._storage.delete, path)
