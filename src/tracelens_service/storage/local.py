"""Local filesystem storage for uploaded images."""

from __future__ import annotations

import os
import re
import secrets
import time
from pathlib import Path

from tracelens_service.core.logging import get_logger
from tracelens_service.storage.base import StoredFile
from tracelens_service.storage.exceptions import (
    RootBoundaryError,
    StorageDeleteError,
    StorageWriteError,
    StoredFileNotFoundError,
)

logger = get_logger(__name__)


def generate_filename(original_name: str) -> str:
    """Build a unique, filesystem-safe name that keeps the original extension.

    Format: ``<epoch-ms>-<12 hex chars>-<sanitized base, max 20 chars><ext>``

    Args:
        original_name: Client-supplied filename (may contain any characters).

    Returns:
        Generated filename, e.g. ``1718000000000-a1b2c3d4e5f6-holiday_photo.jpg``.
    """
    # Drop any client-side directories before splitting the extension
    basename = original_name.replace("\\", "/").rsplit("/", 1)[-1]
    stem, ext = os.path.splitext(basename)
    ext = ext.lower()
    if not re.fullmatch(r"\.[a-z0-9]{1,10}", ext):
        ext = ""
    safe_stem = re.sub(r"[^a-zA-Z0-9]", "_", stem)[:20] or "image"
    timestamp_ms = int(time.time() * 1000)
    return f"{timestamp_ms}-{secrets.token_hex(6)}-{safe_stem}{ext}"


class LocalFileStorage:
    """Stores files flat under a single root directory.

    Every path handed in is resolved and checked against the root, so a
    tampered storage handle cannot read or delete files elsewhere.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def resolve(self, path: str) -> Path:
        """Resolve a storage handle to an absolute path inside the root.

        Raises:
            RootBoundaryError: If the path points outside the root.
        """
        candidate = Path(path)
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        try:
            resolved.relative_to(self.root)
        except ValueError:
            raise RootBoundaryError(path) from None
        return resolved

    def save(self, content: bytes, original_name: str) -> StoredFile:
        filename = generate_filename(original_name)
        target = self.root / filename
        try:
            # Exclusive create: never overwrite an existing upload
            with open(target, "xb") as fh:
                fh.write(content)
        except OSError as e:
            raise StorageWriteError(filename, detail=str(e)) from e

        logger.debug(
            "Stored file",
            extra={"stored_filename": filename, "size_bytes": len(content)},
        )
        return StoredFile(filename=filename, path=str(target), size=len(content))

    def exists(self, path: str) -> bool:
        try:
            resolved = self.resolve(path)
        except RootBoundaryError:
            return False
        return resolved.is_file() and os.access(resolved, os.R_OK)

    def read(self, path: str) -> bytes:
        resolved = self.resolve(path)
        try:
            return resolved.read_bytes()
        except FileNotFoundError:
            raise StoredFileNotFoundError(path) from None

    def delete(self, path: str) -> None:
        resolved = self.resolve(path)
        try:
            resolved.unlink()
        except FileNotFoundError:
            raise StoredFileNotFoundError(path) from None
        except OSError as e:
            raise StorageDeleteError(path, detail=str(e)) from e
        logger.debug("Deleted stored file", extra={"path": path})
