"""create_alist_ingest_uploads

Revision ID: 3b9e61d2f4a7
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "3b9e61d2f4a7"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

STATUS_ENUM = sa.Enum("PENDING", "PROCESSING", "COMPLETED", "FAILED", name="ingestuploadstatus")


def upgrade() -> None:
    """Create alist_ingest_uploads table with natural key and worker indexes."""
    op.create_table(
        "alist_ingest_uploads",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("setting_id", sa.Integer(), nullable=False),
        sa.Column("resource_id", sa.Integer(), nullable=True),
        sa.Column("folder_path", sa.String(length=1024), nullable=False),
        sa.Column("file_name", sa.String(length=512), nullable=False),
        sa.Column("alist_file_path", sa.String(length=1024), nullable=False),
        sa.Column("file_size", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("file_modified_at", sa.DateTime(), nullable=True),
        sa.Column("bucket", sa.String(length=255), nullable=False),
        sa.Column("object_name", sa.String(length=512), nullable=False),
        sa.Column("file_url", sa.String(length=2048), nullable=False),
        sa.Column("upload_url", sa.String(), nullable=True),
        sa.Column("upload_method", sa.String(length=10), nullable=False, server_default="PUT"),
        sa.Column("content_type", sa.String(length=255), nullable=True),
        sa.Column("upload_headers", sa.JSON(), nullable=True),
        sa.Column("expires_at", sa.DateTime(), nullable=True),
        sa.Column("status", STATUS_ENUM, nullable=False, server_default="PENDING"),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.String(length=500), nullable=True),
        sa.Column("claimed_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("setting_id", "alist_file_path", name="uq_alist_ingest_uploads_path"),
    )
    op.create_index(
        "ix_alist_ingest_uploads_setting_id", "alist_ingest_uploads", ["setting_id"]
    )
    op.create_index(
        "ix_alist_ingest_uploads_resource_id", "alist_ingest_uploads", ["resource_id"]
    )
    op.create_index("ix_alist_ingest_uploads_status", "alist_ingest_uploads", ["status"])
    op.create_index(
        "ix_alist_ingest_uploads_updated_at", "alist_ingest_uploads", ["updated_at"]
    )


def downgrade() -> None:
    """Drop alist_ingest_uploads table."""
    op.drop_index("ix_alist_ingest_uploads_updated_at", table_name="alist_ingest_uploads")
    op.drop_index("ix_alist_ingest_uploads_status", table_name="alist_ingest_uploads")
    op.drop_index("ix_alist_ingest_uploads_resource_id", table_name="alist_ingest_uploads")
    op.drop_index("ix_alist_ingest_uploads_setting_id", table_name="alist_ingest_uploads")
    op.drop_table("alist_ingest_uploads")
    STATUS_ENUM.drop(op.get_bind(), checkfirst=True)
