"""Owner-scoped persistence for image records.

Every query filters on ``owner_id`` in SQL, so a record that belongs to
another owner is indistinguishable from one that does not exist.
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any, Literal

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tracelens_service.core.logging import get_logger
from tracelens_service.db.models import ImageRecord, SortField
from tracelens_service.faces.detection import DetectionResult

logger = get_logger(__name__)

SortOrder = Literal["asc", "desc"]

MAX_PAGE_LIMIT = 100
DEFAULT_PAGE_LIMIT = 20

_SORT_COLUMNS = {
    SortField.UPLOADED_AT: ImageRecord.uploaded_at,
    SortField.ORIGINAL_NAME: ImageRecord.original_name,
    SortField.SIZE: ImageRecord.size,
    SortField.PROCESSED_AT: ImageRecord.processed_at,
}


@dataclass(frozen=True)
class RemovedImage:
    """Identity and storage handle of a record that was just deleted."""

    id: int
    path: str


@dataclass(frozen=True)
class RegisteredImage:
    """Detached copy of a record's columns.

    Stays readable after a later rollback on the same session has expired
    the ORM instance it was taken from.
    """

    id: int
    owner_id: int
    filename: str
    original_name: str
    path: str
    size: int
    mime_type: str
    width: int | None
    height: int | None
    uploaded_at: datetime
    processed: bool
    processed_at: datetime | None
    detection_result: dict[str, Any] | None

    @classmethod
    def from_record(cls, record: ImageRecord) -> "RegisteredImage":
        return cls(
            id=record.id,
            owner_id=record.owner_id,
            filename=record.filename,
            original_name=record.original_name,
            path=record.path,
            size=record.size,
            mime_type=record.mime_type,
            width=record.width,
            height=record.height,
            uploaded_at=record.uploaded_at,
            processed=record.processed,
            processed_at=record.processed_at,
            detection_result=record.detection_result,
        )


@dataclass(frozen=True)
class ImagePage:
    """One page of an owner's image listing."""

    items: list[ImageRecord]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.total else 0


@dataclass(frozen=True)
class OwnerStats:
    """Aggregate statistics over one owner's images."""

    total_images: int
    processed_images: int
    total_size: int
    total_faces: int
    avg_confidence: float


class ImageRecordStore:
    """Repository for ImageRecord rows bound to one database session."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def create(
        self,
        owner_id: int,
        filename: str,
        original_name: str,
        path: str,
        size: int,
        mime_type: str,
        width: int | None = None,
        height: int | None = None,
    ) -> ImageRecord:
        """Insert a new, unprocessed record.

        Raises:
            SQLAlchemyError: If the insert fails; the session is rolled back.
        """
        record = ImageRecord(
            owner_id=owner_id,
            filename=filename,
            original_name=original_name,
            path=path,
            size=size,
            mime_type=mime_type,
            width=width,
            height=height,
            processed=False,
        )
        self.db.add(record)
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise
        await self.db.refresh(record)
        return record

    async def find_by_id_and_owner(self, image_id: int, owner_id: int) -> ImageRecord | None:
        result = await self.db.execute(
            select(ImageRecord).where(
                ImageRecord.id == image_id,
                ImageRecord.owner_id == owner_id,
            )
        )
        return result.scalar_one_or_none()

    async def find_many_by_owner(
        self, image_ids: Sequence[int], owner_id: int
    ) -> list[ImageRecord]:
        """Return the owner's records among ``image_ids`` (unknown ids are skipped)."""
        if not image_ids:
            return []
        result = await self.db.execute(
            select(ImageRecord)
            .where(ImageRecord.owner_id == owner_id, ImageRecord.id.in_(list(image_ids)))
            .order_by(ImageRecord.id)
        )
        return list(result.scalars().all())

    async def update_detection_result(
        self, image_id: int, owner_id: int, result: DetectionResult
    ) -> bool:
        """Mark a record processed and store its detection result.

        Runs as a single UPDATE so ``processed``, ``processed_at`` and the
        result are written together or not at all.

        Args:
            image_id: Record to update.
            owner_id: Owner the record must belong to.
            result: Finalized detection result.

        Returns:
            True if exactly one row was updated.

        Raises:
            SQLAlchemyError: If the write fails; the session is rolled back.
        """
        stmt = (
            update(ImageRecord)
            .where(ImageRecord.id == image_id, ImageRecord.owner_id == owner_id)
            .values(
                processed=True,
                processed_at=datetime.now(UTC),
                detection_result=result.to_dict(),
                face_count=result.face_count,
                detection_confidence=result.confidence,
            )
        )
        try:
            cursor = await self.db.execute(stmt)
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            raise

        rowcount = cursor.rowcount or 0  # type: ignore[attr-defined]
        return rowcount == 1

    async def delete_by_id_and_owner(self, image_id: int, owner_id: int) -> RemovedImage | None:
        """Delete one record.

        Returns:
            The removed record's id and storage path, or None if the owner
            has no such record.
        """
        record = await self.find_by_id_and_owner(image_id, owner_id)
        if record is None:
            return None

        removed = RemovedImage(id=record.id, path=record.path)
        await self.db.delete(record)
        await self.db.commit()
        return removed

    async def delete_many_by_owner(
        self, image_ids: Sequence[int], owner_id: int
    ) -> list[RemovedImage]:
        """Delete the owner's records among ``image_ids`` in one statement."""
        records = await self.find_many_by_owner(image_ids, owner_id)
        if not records:
            return []

        removed = [RemovedImage(id=r.id, path=r.path) for r in records]
        await self.db.execute(
            delete(ImageRecord).where(
                ImageRecord.owner_id == owner_id,
                ImageRecord.id.in_([r.id for r in removed]),
            )
        )
        await self.db.commit()
        return removed

    async def list_by_owner(
        self,
        owner_id: int,
        processed: bool | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
        sort_by: SortField = SortField.UPLOADED_AT,
        sort_order: SortOrder = "desc",
    ) -> ImagePage:
        """List an owner's records with optional processed filter.

        Args:
            owner_id: Owner whose records to list.
            processed: Only processed (True) or unprocessed (False) records; None for all.
            page: 1-based page number.
            limit: Page size, 1 to 100.
            sort_by: Column to sort on.
            sort_order: "asc" or "desc".

        Raises:
            ValueError: If page or limit is out of range.
        """
        if page < 1:
            raise ValueError(f"page must be >= 1, got {page}")
        if not 1 <= limit <= MAX_PAGE_LIMIT:
            raise ValueError(f"limit must be between 1 and {MAX_PAGE_LIMIT}, got {limit}")

        conditions = [ImageRecord.owner_id == owner_id]
        if processed is not None:
            conditions.append(ImageRecord.processed == processed)

        count_result = await self.db.execute(
            select(func.count()).select_from(ImageRecord).where(*conditions)
        )
        total = count_result.scalar_one()

        column = _SORT_COLUMNS[SortField(sort_by)]
        if sort_order == "asc":
            ordering = [column.asc(), ImageRecord.id.asc()]
        else:
            ordering = [column.desc(), ImageRecord.id.desc()]

        result = await self.db.execute(
            select(ImageRecord)
            .where(*conditions)
            .order_by(*ordering)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return ImagePage(
            items=list(result.scalars().all()),
            total=total,
            page=page,
            limit=limit,
        )

    async def aggregate_stats_by_owner(self, owner_id: int) -> OwnerStats:
        result = await self.db.execute(
            select(
                func.count(ImageRecord.id),
                func.count(ImageRecord.processed_at),
                func.coalesce(func.sum(ImageRecord.size), 0),
                func.coalesce(func.sum(ImageRecord.face_count), 0),
                func.avg(ImageRecord.detection_confidence),
            ).where(ImageRecord.owner_id == owner_id)
        )
        total, processed, total_size, total_faces, avg_confidence = result.one()
        return OwnerStats(
            total_images=int(total),
            processed_images=int(processed),
            total_size=int(total_size),
            total_faces=int(total_faces),
            avg_confidence=round(float(avg_confidence), 2) if avg_confidence is not None else 0.0,
        )

    async def list_unprocessed_ids(self, owner_id: int, limit: int | None = None) -> list[int]:
        """Ids of the owner's unprocessed records, oldest upload first."""
        stmt = (
            select(ImageRecord.id)
            .where(ImageRecord.owner_id == owner_id, ImageRecord.processed.is_(False))
            .order_by(ImageRecord.uploaded_at.asc(), ImageRecord.id.asc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())
