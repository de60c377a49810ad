"""Producer-side helpers: turn a discovered Alist file into an upload task.

Directory scanning and resource creation live outside this package. A scanner
calls prepare_upload_task once per discovered file; the task is then picked up
by the ingest upload worker.
"""

import posixpath
import secrets
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Protocol

import structlog

from alcms_ingest.core.timezone import to_naive_utc
from alcms_ingest.models.ingest_upload import (
    IngestUploadDescriptor,
    IngestUploadStatus,
    IngestUploadTask,
    UploadCredentials,
)
from alcms_ingest.services.ingest.credentials import ensure_fresh_credential
from alcms_ingest.uow import UnitOfWork

logger = structlog.get_logger(__name__)

IMAGE_CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".svg": "image/svg+xml",
}


class UploadTargetStorage(Protocol):
    """Storage capabilities the producer needs (ObjectStorageClient)."""

    def get_file_url(self, bucket: str, object_name: str) -> str: ...

    async def presign_put(
        self, bucket: str, object_name: str, ttl_seconds: int
    ) -> UploadCredentials: ...


@dataclass
class DiscoveredFile:
    """A file entry as listed by Alist."""

    name: str
    size: int = 0
    modified_at: Optional[datetime] = None


def join_alist_path(base_path: str, segment: str) -> str:
    """Join an Alist directory path and an entry name."""
    if not segment:
        return base_path
    if base_path in ("", "/"):
        return f"/{segment}"
    return f"{base_path.rstrip('/')}/{segment}"


def file_extension(file_name: str) -> str:
    """Lower-cased extension including the dot ('' if none)."""
    return posixpath.splitext(file_name)[1].lower()


def is_image_file(file_name: str) -> bool:
    return file_extension(file_name) in IMAGE_CONTENT_TYPES


def guess_content_type(file_name: str) -> str:
    """Content type for a file name, falling back to application/octet-stream."""
    return IMAGE_CONTENT_TYPES.get(file_extension(file_name), "application/octet-stream")


def generate_object_name(file_name: str) -> str:
    """Unique object key: '<epoch millis>_<random>.<ext>'."""
    extension = file_name.rsplit(".", 1)[-1] if "." in file_name else "bin"
    return f"{int(time.time() * 1000)}_{secrets.token_hex(6)}.{extension}"


def needs_full_reset(existing: IngestUploadTask, modified_at: Optional[datetime]) -> bool:
    """True when rediscovery will reset the task (file changed or task failed)."""
    if existing.status == IngestUploadStatus.FAILED:
        return True
    modified_at = to_naive_utc(modified_at)
    return modified_at is not None and existing.file_modified_at != modified_at


async def prepare_upload_task(
    uow: UnitOfWork,
    storage: UploadTargetStorage,
    setting_id: int,
    resource_id: Optional[int],
    folder_path: str,
    file: DiscoveredFile,
    bucket: str,
) -> IngestUploadTask:
    """Build a descriptor for a discovered file and upsert its task.

    The existing object name is reused so re-uploads overwrite the same object.
    A new presigned credential is minted when the task is new, when the
    source file changed, when the task failed, or when the stored credential
    is within the safety buffer of expiring.

    Args:
        uow: Unit of work (caller commits by leaving the context)
        storage: Object storage client
        setting_id: Ingestion setting the file was discovered by
        resource_id: Platform resource the file belongs to
        folder_path: Alist folder containing the file
        file: Discovered file entry
        bucket: Destination bucket

    Returns:
        Upserted task
    """
    alist_file_path = join_alist_path(folder_path, file.name)
    existing = await uow.ingest_uploads.find_by_natural_key(setting_id, alist_file_path)

    object_name = existing.object_name if existing else generate_object_name(file.name)
    upload_url = existing.upload_url if existing else None
    expires_at = existing.expires_at if existing else None
    upload_headers = existing.upload_headers if existing else None

    credentials = await ensure_fresh_credential(
        storage,
        bucket,
        object_name,
        upload_url,
        expires_at,
        force=existing is None or needs_full_reset(existing, file.modified_at),
    )
    if credentials is not None:
        upload_url = credentials.upload_url
        expires_at = credentials.expires_at
        upload_headers = credentials.upload_headers

    descriptor = IngestUploadDescriptor(
        setting_id=setting_id,
        resource_id=resource_id,
        folder_path=folder_path,
        file_name=file.name,
        alist_file_path=alist_file_path,
        file_size=file.size or 0,
        file_modified_at=file.modified_at,
        bucket=bucket,
        object_name=object_name,
        file_url=storage.get_file_url(bucket, object_name),
        upload_url=upload_url,
        upload_method="PUT",
        content_type=guess_content_type(file.name),
        upload_headers=upload_headers,
        expires_at=expires_at,
    )
    task = await uow.ingest_uploads.upsert(descriptor)

    logger.info(
        "ingest.task.upserted",
        task_id=str(task.id),
        setting_id=setting_id,
        alist_file_path=alist_file_path,
        status=task.status.value,
        credentials_minted=credentials is not None,
    )
    return task
