"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from alcms_ingest.models.ingest_upload import (
    CLAIMABLE_STATUSES,
    IngestUploadDescriptor,
    IngestUploadStatus,
    IngestUploadTask,
    UploadCredentials,
)

__all__ = [
    "CLAIMABLE_STATUSES",
    "IngestUploadDescriptor",
    "IngestUploadStatus",
    "IngestUploadTask",
    "UploadCredentials",
]
