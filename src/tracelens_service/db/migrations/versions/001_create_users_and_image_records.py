"""Create users and image_records tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 09:30:00

"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    """Create users and image_records tables."""
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("mobile", sa.String(length=20), nullable=True),
        sa.Column("is_verified", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("last_login_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("email"),
    )
    op.create_index("ix_users_mobile", "users", ["mobile"])

    op.create_table(
        "image_records",
        sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
        sa.Column("owner_id", sa.Integer(), nullable=False),
        sa.Column("filename", sa.String(length=255), nullable=False),
        sa.Column("original_name", sa.String(length=255), nullable=False),
        sa.Column("path", sa.String(length=500), nullable=False),
        sa.Column("size", sa.BigInteger(), nullable=False),
        sa.Column("mime_type", sa.String(length=50), nullable=False),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column(
            "uploaded_at",
            sa.DateTime(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("processed", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "detection_result",
            postgresql.JSONB(astext_type=sa.Text()),
            nullable=True,
        ),
        sa.Column("face_count", sa.Integer(), nullable=True),
        sa.Column("detection_confidence", sa.Float(), nullable=True),
        sa.CheckConstraint(
            "(processed AND processed_at IS NOT NULL AND detection_result IS NOT NULL) "
            "OR (NOT processed AND processed_at IS NULL AND detection_result IS NULL)",
            name="ck_image_records_processed_state",
        ),
        sa.ForeignKeyConstraint(["owner_id"], ["users.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("filename"),
    )
    op.create_index(
        "ix_image_records_owner_uploaded", "image_records", ["owner_id", "uploaded_at"]
    )
    op.create_index("ix_image_records_processed", "image_records", ["processed"])


def downgrade() -> None:
    """Drop image_records and users tables."""
    op.drop_index("ix_image_records_processed", table_name="image_records")
    op.drop_index("ix_image_records_owner_uploaded", table_name="image_records")
    op.drop_table("image_records")
    op.drop_index("ix_users_mobile", table_name="users")
    op.drop_table("users")
