"""IngestUploadTask entity - one Alist file being mirrored into object storage."""

from datetime import datetime
from enum import Enum
from typing import Optional
from uuid import UUID, uuid4

from pydantic import BaseModel
from sqlalchemy import JSON, Column, UniqueConstraint
from sqlmodel import Field, SQLModel

from alcms_ingest.core.timezone import utcnow

LAST_ERROR_MAX_LENGTH = 500


class IngestUploadStatus(str, Enum):
    """Ingest upload task lifecycle status."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses a worker may claim from
CLAIMABLE_STATUSES = (IngestUploadStatus.PENDING, IngestUploadStatus.FAILED)


class IngestUploadTask(SQLModel, table=True):
    """Task that copies one file from Alist to a presigned object storage URL."""

    __tablename__ = "alist_ingest_uploads"  # type: ignore[assignment]
    __table_args__ = (
        UniqueConstraint("setting_id", "alist_file_path", name="uq_alist_ingest_uploads_path"),
    )

    id: UUID = Field(default_factory=uuid4, primary_key=True)
    setting_id: int = Field(index=True)
    resource_id: Optional[int] = Field(default=None, index=True)
    folder_path: str = Field(max_length=1024)
    file_name: str = Field(max_length=512)
    alist_file_path: str = Field(max_length=1024)
    file_size: int = Field(default=0, ge=0)
    file_modified_at: Optional[datetime] = Field(default=None)

    # Destination coordinates
    bucket: str = Field(max_length=255)
    object_name: str = Field(max_length=512)
    file_url: str = Field(max_length=2048)

    # Presigned upload credential bundle
    upload_url: Optional[str] = Field(default=None)
    upload_method: str = Field(default="PUT", max_length=10)
    content_type: Optional[str] = Field(default=None, max_length=255)
    upload_headers: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    expires_at: Optional[datetime] = Field(default=None)

    status: IngestUploadStatus = Field(default=IngestUploadStatus.PENDING, index=True)
    retry_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = Field(default=None, max_length=LAST_ERROR_MAX_LENGTH)
    claimed_at: Optional[datetime] = Field(default=None)

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow, index=True)


class IngestUploadDescriptor(BaseModel):
    """Producer-side description of a discovered file, used for create/upsert."""

    setting_id: int
    resource_id: Optional[int] = None
    folder_path: str
    file_name: str
    alist_file_path: str
    file_size: int = 0
    file_modified_at: Optional[datetime] = None
    bucket: str
    object_name: str
    file_url: str
    upload_url: Optional[str] = None
    upload_method: str = "PUT"
    content_type: Optional[str] = None
    upload_headers: Optional[dict] = None
    expires_at: Optional[datetime] = None


class UploadCredentials(BaseModel):
    """Presigned upload credential: URL, optional headers and expiry."""

    upload_url: str
    expires_at: datetime
    upload_headers: Optional[dict] = None
