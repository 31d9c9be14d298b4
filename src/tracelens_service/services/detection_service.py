"""Batch face detection over an owner's image records.

For each requested id, in input order and independently of the others:

1. look the record up, scoped to the owner
2. check that its backing file is still readable
3. run the face detector under a per-item time budget
4. merge measured timing and fallback dimensions into the result
5. persist the result in one atomic write

A failing item produces a structured outcome and never aborts the batch.
Lookup failures (database unreachable) are not item failures and propagate.

Usage::

    orchestrator = BatchDetectionOrchestrator(
        store=ImageRecordStore(db), storage=storage, detector=detector
    )
    batch = await orchestrator.run_batch(owner_id, [1, 2, 3])
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy.exc import SQLAlchemyError

from tracelens_service.core.config import Settings
from tracelens_service.core.logging import get_logger
from tracelens_service.db.image_store import ImageRecordStore
from tracelens_service.faces.detection import DetectionResult
from tracelens_service.faces.detector import FaceDetectionProvider
from tracelens_service.faces.exceptions import (
    DetectionError,
    DetectionTimeoutError,
    MalformedDetectionError,
)
from tracelens_service.storage.async_wrapper import AsyncFileStorage
from tracelens_service.storage.exceptions import StorageError

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Outcome types
# ---------------------------------------------------------------------------


class ErrorCode(str, Enum):
    """Machine-readable reasons a batch or an item failed."""

    INVALID_BATCH_INPUT = "INVALID_BATCH_INPUT"
    NOT_FOUND = "NOT_FOUND"
    FILE_MISSING = "FILE_MISSING"
    DETECTION_FAILED = "DETECTION_FAILED"
    PERSIST_FAILED = "PERSIST_FAILED"
    CANCELLED = "CANCELLED"


# Item failures caused by the request itself rather than by the backend
VALIDATION_ERROR_CODES = frozenset({ErrorCode.NOT_FOUND, ErrorCode.FILE_MISSING})


class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class InvalidBatchInputError(ValueError):
    """Raised when a batch is empty or larger than the configured maximum."""

    code = ErrorCode.INVALID_BATCH_INPUT

    def __init__(self, message: str, size: int, max_size: int) -> None:
        self.size = size
        self.max_size = max_size
        super().__init__(message)


@dataclass(frozen=True)
class ItemOutcome:
    """Result of processing one requested image id.

    Exactly one of ``result`` (on success) or ``error_code`` (on failure) is set.
    """

    image_id: int
    status: OutcomeStatus
    result: DetectionResult | None = None
    error_code: ErrorCode | None = None
    error_message: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is OutcomeStatus.SUCCESS

    @classmethod
    def success(cls, image_id: int, result: DetectionResult) -> ItemOutcome:
        return cls(image_id=image_id, status=OutcomeStatus.SUCCESS, result=result)

    @classmethod
    def failure(cls, image_id: int, code: ErrorCode, message: str) -> ItemOutcome:
        return cls(
            image_id=image_id,
            status=OutcomeStatus.FAILED,
            error_code=code,
            error_message=message,
        )


@dataclass
class BatchResult:
    """Per-item outcomes in the same order as the requested ids."""

    outcomes: list[ItemOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @property
    def failed(self) -> int:
        return len(self.outcomes) - self.succeeded

    @property
    def only_validation_failures(self) -> bool:
        """True when nothing succeeded and every failure was NOT_FOUND or FILE_MISSING."""
        return bool(self.outcomes) and all(
            o.error_code in VALIDATION_ERROR_CODES for o in self.outcomes
        )

    @property
    def message(self) -> str:
        return f"Processed {self.succeeded} of {len(self.outcomes)} images"


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class BatchDetectionOrchestrator:
    """Runs face detection for a batch of owner-scoped image ids.

    Items are processed sequentially; each detector call and store write is
    awaited before the next item starts.
    """

    def __init__(
        self,
        store: ImageRecordStore,
        storage: AsyncFileStorage,
        detector: FaceDetectionProvider,
        max_batch_size: int = 10,
        timeout_seconds: float = 30.0,
        default_size: tuple[int, int] = (800, 600),
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Record store bound to the request's database session.
            storage: Storage holding the image bytes.
            detector: Default face detector, overridable per batch.
            max_batch_size: Largest accepted number of ids per batch.
            timeout_seconds: Time budget for a single detector call.
            default_size: (width, height) used when neither the detector nor
                the record knows the image dimensions.
        """
        self.store = store
        self.storage = storage
        self.detector = detector
        self.max_batch_size = max_batch_size
        self.timeout_seconds = timeout_seconds
        self.default_size = default_size

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: ImageRecordStore,
        storage: AsyncFileStorage,
        detector: FaceDetectionProvider,
    ) -> BatchDetectionOrchestrator:
        return cls(
            store=store,
            storage=storage,
            detector=detector,
            max_batch_size=settings.detection_max_batch_size,
            timeout_seconds=settings.detection_timeout_seconds,
            default_size=(settings.default_image_width, settings.default_image_height),
        )

    def validate_batch(self, image_ids: Sequence[int]) -> None:
        """Reject empty or oversized batches before any processing.

        Raises:
            InvalidBatchInputError: If the batch size is out of range.
        """
        size = len(image_ids)
        if size == 0:
            raise InvalidBatchInputError(
                "At least one image id is required", size=size, max_size=self.max_batch_size
            )
        if size > self.max_batch_size:
            raise InvalidBatchInputError(
                f"At most {self.max_batch_size} images can be processed per batch, got {size}",
                size=size,
                max_size=self.max_batch_size,
            )

    async def run_batch(
        self,
        owner_id: int,
        image_ids: Sequence[int],
        detector: FaceDetectionProvider | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> BatchResult:
        """Detect faces for each id and persist the results.

        Args:
            owner_id: Owner the records must belong to.
            image_ids: Ids to process, in the order outcomes are reported.
            detector: Detector for this batch; defaults to the configured one.
            cancel_event: When set, items not yet started are reported as
                CANCELLED and left untouched.

        Returns:
            BatchResult with exactly one outcome per requested id.

        Raises:
            InvalidBatchInputError: If the batch is empty or too large.
            SQLAlchemyError: If a record lookup fails.
        """
        self.validate_batch(image_ids)
        active_detector = detector or self.detector

        logger.info(
            f"Starting face detection batch of {len(image_ids)} images",
            extra={
                "owner_id": owner_id,
                "batch_size": len(image_ids),
                "provider": active_detector.provider_id,
            },
        )

        batch = BatchResult()
        for image_id in image_ids:
            if cancel_event is not None and cancel_event.is_set():
                batch.outcomes.append(
                    ItemOutcome.failure(image_id, ErrorCode.CANCELLED, "Batch was cancelled")
                )
                continue
            batch.outcomes.append(await self._process_item(owner_id, image_id, active_detector))

        logger.info(
            f"Face detection batch finished: {batch.succeeded} succeeded, {batch.failed} failed",
            extra={"owner_id": owner_id, "succeeded": batch.succeeded, "failed": batch.failed},
        )
        return batch

    async def _process_item(
        self, owner_id: int, image_id: int, detector: FaceDetectionProvider
    ) -> ItemOutcome:
        record = await self.store.find_by_id_and_owner(image_id, owner_id)
        if record is None:
            return ItemOutcome.failure(image_id, ErrorCode.NOT_FOUND, "Image not found")

        # Capture attributes now; a failed write rolls back and expires the instance
        path = record.path
        size_hint = (
            (record.width, record.height)
            if record.width is not None and record.height is not None
            else None
        )

        try:
            if not await self.storage.exists(path):
                return ItemOutcome.failure(
                    image_id, ErrorCode.FILE_MISSING, "Image file is missing from storage"
                )
            content = await self.storage.read(path)
        except (StorageError, OSError) as e:
            logger.warning(
                f"Image file unreadable: {e}",
                extra={"image_id": image_id, "error_code": ErrorCode.FILE_MISSING.value},
            )
            return ItemOutcome.failure(
                image_id, ErrorCode.FILE_MISSING, "Image file is missing from storage"
            )

        try:
            result = await self._detect(detector, content, size_hint)
        except DetectionError as e:
            logger.warning(
                f"Face detection failed for image {image_id}: {e}",
                extra={"image_id": image_id, "error_code": ErrorCode.DETECTION_FAILED.value},
            )
            return ItemOutcome.failure(image_id, ErrorCode.DETECTION_FAILED, str(e))

        try:
            updated = await self.store.update_detection_result(image_id, owner_id, result)
        except SQLAlchemyError as e:
            logger.error(
                f"Failed to persist detection result for image {image_id}: {e}",
                extra={"image_id": image_id, "error_code": ErrorCode.PERSIST_FAILED.value},
            )
            return ItemOutcome.failure(
                image_id, ErrorCode.PERSIST_FAILED, "Detection result could not be saved"
            )
        if not updated:
            return ItemOutcome.failure(
                image_id, ErrorCode.PERSIST_FAILED, "Image was removed before the result was saved"
            )

        logger.debug(
            f"Detected {result.face_count} faces in image {image_id}",
            extra={"image_id": image_id, "face_count": result.face_count},
        )
        return ItemOutcome.success(image_id, result)

    async def _detect(
        self,
        detector: FaceDetectionProvider,
        content: bytes,
        size_hint: tuple[int, int] | None,
    ) -> DetectionResult:
        """Call the detector under the time budget and finalize its result.

        Raises:
            DetectionError: On provider failure, timeout or a malformed result.
        """
        started = time.perf_counter()
        try:
            raw = await asyncio.wait_for(
                detector.detect(content, size_hint=size_hint),
                timeout=self.timeout_seconds,
            )
        except TimeoutError:
            raise DetectionTimeoutError(self.timeout_seconds) from None
        except DetectionError:
            raise
        except Exception as e:
            # Third-party providers may raise anything; treat it as a provider failure
            logger.exception(f"Detector {detector.provider_id} raised unexpectedly")
            raise DetectionError(f"{detector.provider_id}: {e}") from e
        elapsed_ms = int(round((time.perf_counter() - started) * 1000))

        if not isinstance(raw, DetectionResult):
            raise MalformedDetectionError(
                f"{detector.provider_id} returned {type(raw).__name__}, expected DetectionResult"
            )

        fallback_width, fallback_height = size_hint or self.default_size
        return raw.finalize(
            processing_time_ms=elapsed_ms,
            fallback_width=fallback_width,
            fallback_height=fallback_height,
        )
