"""Image file storage layer.

Exports:
    - FileStorage protocol and StoredFile result type
    - LocalFileStorage implementation
    - AsyncFileStorage wrapper for use from async routes
    - Exception hierarchy (StorageError and subclasses)
    - create_file_storage() factory, called once at application startup

Usage:
    storage = create_file_storage(get_settings())
    stored = await storage.save(content, "holiday.jpg")
"""

from __future__ import annotations

from tracelens_service.core.config import Settings
from tracelens_service.core.logging import get_logger
from tracelens_service.storage.async_wrapper import AsyncFileStorage
from tracelens_service.storage.base import FileStorage, StoredFile
from tracelens_service.storage.exceptions import (
    RootBoundaryError,
    StorageDeleteError,
    StorageError,
    StorageWriteError,
    StoredFileNotFoundError,
)
from tracelens_service.storage.local import LocalFileStorage, generate_filename

logger = get_logger(__name__)

__all__ = [
    "AsyncFileStorage",
    "FileStorage",
    "LocalFileStorage",
    "RootBoundaryError",
    "StorageDeleteError",
    "StorageError",
    "StorageWriteError",
    "StoredFile",
    "StoredFileNotFoundError",
    "create_file_storage",
    "generate_filename",
]


def create_file_storage(settings: Settings) -> AsyncFileStorage:
    """Create the async file storage rooted at ``UPLOAD_DIR``."""
    storage = LocalFileStorage(settings.upload_dir)
    logger.info(f"File storage initialized at {storage.root}")
    return AsyncFileStorage(storage)
