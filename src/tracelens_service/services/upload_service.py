"""Image upload intake.

Each incoming file runs through a linear validation pipeline. Every stage
returns the (possibly enriched) candidate or a rejection; the first rejection
stops the pipeline for that file only:

    MIME allow-list -> extension allow-list -> empty/size ceiling -> Pillow decode

Accepted files are written to storage under a generated unique name and then
registered as unprocessed ImageRecords. A file whose record cannot be
registered is removed from storage again.

Request-level limits (no files, too many files) reject the whole request
before anything is written.
"""

from __future__ import annotations

import asyncio
import io
import os
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from enum import Enum
from functools import partial

from PIL import Image
from sqlalchemy.exc import SQLAlchemyError

from tracelens_service.core.config import Settings
from tracelens_service.core.logging import get_logger
from tracelens_service.db.image_store import ImageRecordStore, RegisteredImage
from tracelens_service.faces.detector import read_image_size
from tracelens_service.storage.async_wrapper import AsyncFileStorage
from tracelens_service.storage.exceptions import StorageError

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Types
# ---------------------------------------------------------------------------


class RejectionCode(str, Enum):
    INVALID_MIME_TYPE = "INVALID_MIME_TYPE"
    INVALID_EXTENSION = "INVALID_EXTENSION"
    EMPTY_FILE = "EMPTY_FILE"
    FILE_TOO_LARGE = "FILE_TOO_LARGE"
    INVALID_IMAGE = "INVALID_IMAGE"
    STORAGE_FAILED = "STORAGE_FAILED"
    PERSIST_FAILED = "PERSIST_FAILED"


# Rejections caused by the server rather than by the uploaded file
SERVER_REJECTION_CODES = frozenset({RejectionCode.STORAGE_FAILED, RejectionCode.PERSIST_FAILED})


class UploadLimitError(ValueError):
    """Raised when an upload request carries no files or too many files.

    Attributes:
        count: Number of files in the request.
        limit: Configured maximum per request.
    """

    def __init__(self, count: int, limit: int) -> None:
        self.count = count
        self.limit = limit
        if count == 0:
            message = "No files were uploaded"
        else:
            message = f"Too many files: {count} uploaded, at most {limit} allowed per request"
        super().__init__(message)


@dataclass(frozen=True)
class IncomingFile:
    """A file as received from the client."""

    filename: str
    content_type: str | None
    content: bytes


@dataclass(frozen=True)
class UploadCandidate:
    """A file moving through the validation pipeline."""

    file: IncomingFile
    mime_type: str = ""
    width: int | None = None
    height: int | None = None


@dataclass(frozen=True)
class UploadRejection:
    filename: str
    code: RejectionCode
    message: str


@dataclass
class IngestResult:
    """Registered records and per-file rejections of one upload request."""

    accepted: list[RegisteredImage] = field(default_factory=list)
    rejected: list[UploadRejection] = field(default_factory=list)

    @property
    def only_validation_failures(self) -> bool:
        """True when nothing was accepted and no rejection was caused by the server."""
        return not self.accepted and all(
            r.code not in SERVER_REJECTION_CODES for r in self.rejected
        )

    @property
    def message(self) -> str:
        total = len(self.accepted) + len(self.rejected)
        return f"Uploaded {len(self.accepted)} of {total} images"


StageResult = UploadCandidate | UploadRejection
Stage = Callable[[UploadCandidate], StageResult]


# ---------------------------------------------------------------------------
# Validation stages
# ---------------------------------------------------------------------------


def check_mime_type(candidate: UploadCandidate, allowed: Sequence[str]) -> StageResult:
    mime_type = (candidate.file.content_type or "").split(";", 1)[0].strip().lower()
    if mime_type not in allowed:
        return UploadRejection(
            filename=candidate.file.filename,
            code=RejectionCode.INVALID_MIME_TYPE,
            message=f"Unsupported file type '{mime_type or 'unknown'}'",
        )
    return replace(candidate, mime_type=mime_type)


def check_extension(candidate: UploadCandidate, allowed: Sequence[str]) -> StageResult:
    extension = os.path.splitext(candidate.file.filename)[1].lower()
    if extension not in allowed:
        return UploadRejection(
            filename=candidate.file.filename,
            code=RejectionCode.INVALID_EXTENSION,
            message=f"Unsupported file extension '{extension or 'none'}'",
        )
    return candidate


def check_size(candidate: UploadCandidate, max_size: int) -> StageResult:
    size = len(candidate.file.content)
    if size == 0:
        return UploadRejection(
            filename=candidate.file.filename,
            code=RejectionCode.EMPTY_FILE,
            message="File is empty",
        )
    if size > max_size:
        return UploadRejection(
            filename=candidate.file.filename,
            code=RejectionCode.FILE_TOO_LARGE,
            message=f"File is {size} bytes, the limit is {max_size} bytes",
        )
    return candidate


def check_decodable(candidate: UploadCandidate) -> StageResult:
    """Verify the bytes decode as an image and record its dimensions."""
    try:
        with Image.open(io.BytesIO(candidate.file.content)) as img:
            img.verify()
    except (OSError, ValueError, SyntaxError, Image.DecompressionBombError) as e:
        logger.debug(f"Rejected undecodable upload {candidate.file.filename!r}: {e}")
        return UploadRejection(
            filename=candidate.file.filename,
            code=RejectionCode.INVALID_IMAGE,
            message="File is not a valid image",
        )

    size = read_image_size(candidate.file.content)
    if size is None:
        return candidate
    return replace(candidate, width=size[0], height=size[1])


def run_pipeline(candidate: UploadCandidate, stages: Sequence[Stage]) -> StageResult:
    """Apply stages in order, stopping at the first rejection."""
    current = candidate
    for stage in stages:
        outcome = stage(current)
        if isinstance(outcome, UploadRejection):
            return outcome
        current = outcome
    return current


# ---------------------------------------------------------------------------
# Ingestor
# ---------------------------------------------------------------------------


class UploadIngestor:
    """Validates, stores and registers uploaded images for one owner."""

    def __init__(
        self,
        store: ImageRecordStore,
        storage: AsyncFileStorage,
        settings: Settings,
    ) -> None:
        self.store = store
        self.storage = storage
        self.max_files = settings.max_files_per_upload
        self.stages: tuple[Stage, ...] = (
            partial(check_mime_type, allowed=[m.lower() for m in settings.allowed_mime_types]),
            partial(check_extension, allowed=[e.lower() for e in settings.allowed_extensions]),
            partial(check_size, max_size=settings.max_file_size),
            check_decodable,
        )

    def check_request(self, file_count: int) -> None:
        """Reject requests with no files or more than the per-request limit.

        Raises:
            UploadLimitError: If the file count is out of range.
        """
        if file_count == 0 or file_count > self.max_files:
            raise UploadLimitError(file_count, self.max_files)

    async def ingest(self, owner_id: int, files: Sequence[IncomingFile]) -> IngestResult:
        """Validate, store and register every file.

        Args:
            owner_id: Owner of the new records.
            files: Files in request order.

        Returns:
            IngestResult with accepted records and per-file rejections.

        Raises:
            UploadLimitError: If the request carries no files or too many.
        """
        self.check_request(len(files))

        result = IngestResult()
        for incoming in files:
            outcome = await asyncio.to_thread(
                run_pipeline, UploadCandidate(file=incoming), self.stages
            )
            if isinstance(outcome, UploadRejection):
                result.rejected.append(outcome)
                continue

            registered = await self._store_and_register(owner_id, outcome)
            if isinstance(registered, UploadRejection):
                result.rejected.append(registered)
            else:
                result.accepted.append(registered)

        logger.info(
            f"Upload finished: {len(result.accepted)} accepted, {len(result.rejected)} rejected",
            extra={
                "owner_id": owner_id,
                "accepted": len(result.accepted),
                "rejected": len(result.rejected),
            },
        )
        return result

    async def _store_and_register(
        self, owner_id: int, candidate: UploadCandidate
    ) -> RegisteredImage | UploadRejection:
        original_name = candidate.file.filename
        try:
            stored = await self.storage.save(candidate.file.content, original_name)
        except StorageError as e:
            logger.error(f"Failed to store upload {original_name!r}: {e}")
            return UploadRejection(
                filename=original_name,
                code=RejectionCode.STORAGE_FAILED,
                message="File could not be saved",
            )

        try:
            record = await self.store.create(
                owner_id=owner_id,
                filename=stored.filename,
                original_name=original_name,
                path=stored.path,
                size=stored.size,
                mime_type=candidate.mime_type,
                width=candidate.width,
                height=candidate.height,
            )
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to register upload {original_name!r}: {e}",
                extra={"stored_filename": stored.filename},
            )
            await self._discard(stored.path)
            return UploadRejection(
                filename=original_name,
                code=RejectionCode.PERSIST_FAILED,
                message="Image record could not be saved",
            )

        # Later rollbacks on this session expire the ORM instance
        return RegisteredImage.from_record(record)

    async def _discard(self, path: str) -> None:
        try:
            await self.storage.delete(path)
        except StorageError as e:
            logger.warning(f"Could not remove orphaned upload {path}: {e}")
