"""Database models."""

from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy.sql import func


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


# Use JSONB for PostgreSQL, JSON for SQLite compatibility in tests.
# none_as_null keeps an unset result as SQL NULL rather than the JSON 'null' literal.
JSONB = JSON(none_as_null=True).with_variant(
    PG_JSONB(none_as_null=True, astext_type=Text()), "postgresql"
)


class SortField(str, Enum):
    """Columns an owner may sort their image listing by."""

    UPLOADED_AT = "uploaded_at"
    ORIGINAL_NAME = "original_name"
    SIZE = "size"
    PROCESSED_AT = "processed_at"


class User(Base):
    """Image owner. Credentials and OTP state live with the auth provider."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    mobile: Mapped[str | None] = mapped_column(String(20), nullable=True)
    is_verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    images: Mapped[list["ImageRecord"]] = relationship(
        "ImageRecord", back_populates="owner", cascade="all, delete-orphan"
    )

    __table_args__ = (Index("ix_users_mobile", "mobile"),)

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class ImageRecord(Base):
    """Uploaded image with its file metadata and (once processed) face detection result."""

    __tablename__ = "image_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    owner_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    # File metadata
    filename: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    mime_type: Mapped[str] = mapped_column(String(50), nullable=False)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    uploaded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    # Processing state
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    detection_result: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    # Denormalized from detection_result for per-owner statistics
    face_count: Mapped[int | None] = mapped_column(Integer, nullable=True)
    detection_confidence: Mapped[float | None] = mapped_column(Float, nullable=True)

    owner: Mapped["User"] = relationship("User", back_populates="images")

    __table_args__ = (
        CheckConstraint(
            "(processed AND processed_at IS NOT NULL AND detection_result IS NOT NULL) "
            "OR (NOT processed AND processed_at IS NULL AND detection_result IS NULL)",
            name="ck_image_records_processed_state",
        ),
        Index("ix_image_records_owner_uploaded", "owner_id", "uploaded_at"),
        Index("ix_image_records_processed", "processed"),
    )

    def __repr__(self) -> str:
        return (
            f"<ImageRecord(id={self.id}, owner_id={self.owner_id}, "
            f"filename={self.filename}, processed={self.processed})>"
        )
