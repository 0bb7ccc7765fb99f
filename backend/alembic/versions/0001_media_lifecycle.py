"""media lifecycle tables

Revision ID: 0001
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "form_configs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=160), nullable=False),
        sa.Column("fields", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )

    op.create_table(
        "media_assets",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("storage_key", sa.String(length=512), nullable=False),
        sa.Column("extension", sa.String(length=16), nullable=False),
        sa.Column("original_filename", sa.String(length=255), nullable=True),
        sa.Column("size_bytes", sa.Integer(), nullable=True),
        sa.Column("mime_type", sa.String(length=120), nullable=True),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("variants", sa.JSON(), nullable=True),
        sa.Column("category", sa.String(length=120), nullable=True),
        sa.Column("tags", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.UniqueConstraint("storage_key", name="uq_media_assets_storage_key"),
    )
    op.create_index("ix_media_assets_category", "media_assets", ["category"])

    op.create_table(
        "temp_file_uploads",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True, nullable=False),
        sa.Column("file_url", sa.String(length=1024), nullable=False),
        sa.Column("file_name", sa.String(length=255), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("file_type", sa.String(length=120), nullable=True),
        sa.Column("form_config_id", sa.String(length=64), nullable=True),
        sa.Column("field_name", sa.String(length=120), nullable=True),
        sa.Column("ip_address", sa.String(length=64), nullable=True),
        sa.Column(
            "status",
            sa.Enum("PENDING", "USED", "ORPHAN", name="tempfileuploadstatus", native_enum=False, length=16),
            nullable=False,
            server_default="PENDING",
        ),
        sa.Column("uploaded_at", sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("orphaned_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_temp_file_uploads_file_url", "temp_file_uploads", ["file_url"])
    op.create_index("ix_temp_file_uploads_ip_address", "temp_file_uploads", ["ip_address"])
    op.create_index("ix_temp_file_uploads_status", "temp_file_uploads", ["status"])
    op.create_index("ix_temp_file_uploads_uploaded_at", "temp_file_uploads", ["uploaded_at"])
    op.create_index("ix_temp_file_uploads_orphaned_at", "temp_file_uploads", ["orphaned_at"])


def downgrade() -> None:
    op.drop_index("ix_temp_file_uploads_orphaned_at", table_name="temp_file_uploads")
    op.drop_index("ix_temp_file_uploads_uploaded_at", table_name="temp_file_uploads")
    op.drop_index("ix_temp_file_uploads_status", table_name="temp_file_uploads")
    op.drop_index("ix_temp_file_uploads_ip_address", table_name="temp_file_uploads")
    op.drop_index("ix_temp_file_uploads_file_url", table_name="temp_file_uploads")
    op.drop_table("temp_file_uploads")
    op.drop_index("ix_media_assets_category", table_name="media_assets")
    op.drop_table("media_assets")
    op.drop_table("form_configs")
