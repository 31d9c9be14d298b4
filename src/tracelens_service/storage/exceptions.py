"""Exception hierarchy for image file storage.

All storage exceptions inherit from StorageError.

Exception Tree:
    StorageError (base)
    +-- StoredFileNotFoundError  (file missing from storage)
    +-- RootBoundaryError        (path outside the storage root)
    +-- StorageWriteError        (file could not be written)
    +-- StorageDeleteError       (file exists but could not be removed)
"""

from __future__ import annotations


class StorageError(Exception):
    """Base exception for all storage operations."""

    pass


class StoredFileNotFoundError(StorageError):
    """Raised when a stored file does not exist.

    Attributes:
        path: The storage path that was not found.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Not found: {path}")


class RootBoundaryError(StorageError):
    """Raised when an operation attempts to escape the storage root.

    Triggered by path traversal attempts (e.g., "../../../etc/passwd").

    Attributes:
        path: The offending path.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        super().__init__(f"Path escapes root boundary: {path}")


class StorageWriteError(StorageError):
    """Raised when a file cannot be written.

    Attributes:
        filename: The filename being written.
        detail: Description of the failure.
    """

    def __init__(self, filename: str, detail: str = "") -> None:
        self.filename = filename
        self.detail = detail
        msg = f"Write failed: {filename}"
        if detail:
            msg += f". {detail}"
        super().__init__(msg)


class StorageDeleteError(StorageError):
    """Raised when an existing file cannot be removed.

    Attributes:
        path: The storage path being deleted.
        detail: Description of the failure.
    """

    def __init__(self, path: str, detail: str = "") -> None:
        self.path = path
        self.detail = detail
        msg = f"Delete failed: {path}"
        if detail:
            msg += f". {detail}"
        super().__init__(msg)
