"""File storage abstraction protocol and data types.

Defines the interface the upload and detection services use to keep image
bytes. ``LocalFileStorage`` is the production implementation; tests may
substitute in-memory fakes.

Paths returned by ``save()`` are opaque storage handles. They are stored on
the ImageRecord and handed back to ``exists()``, ``read()`` and ``delete()``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable


@dataclass(frozen=True)
class StoredFile:
    """Result of a save operation.

    Attributes:
        filename: Generated unique filename.
        path: Storage handle to persist alongside the record.
        size: Size in bytes of the stored file.
    """

    filename: str
    path: str
    size: int


@runtime_checkable
class FileStorage(Protocol):
    """Image file storage protocol.

    Implementations are sync. For async FastAPI routes, wrap with
    AsyncFileStorage.
    """

    def save(self, content: bytes, original_name: str) -> StoredFile:
        """Write content under a new unique filename derived from original_name.

        Raises:
            StorageWriteError: If the file cannot be written.
        """
        ...

    def exists(self, path: str) -> bool:
        """Return True if a readable file exists at path."""
        ...

    def read(self, path: str) -> bytes:
        """Return the stored bytes.

        Raises:
            StoredFileNotFoundError: If nothing is stored at path.
        """
        ...

    def delete(self, path: str) -> None:
        """Remove the stored file.

        Raises:
            StoredFileNotFoundError: If nothing is stored at path.
            StorageDeleteError: If the file exists but cannot be removed.
        """
        ...
