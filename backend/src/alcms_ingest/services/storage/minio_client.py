"""MinIO object storage client: presigned PUT URLs and uploads through them."""

import asyncio
from datetime import timedelta
from typing import Optional

import httpx
import structlog
from minio import Minio
from minio.error import MinioException

from alcms_ingest.core.config import Settings
from alcms_ingest.core.timezone import utcnow
from alcms_ingest.models.ingest_upload import UploadCredentials
from alcms_ingest.services.exceptions import StorageNetworkError, StorageRejectionError

logger = structlog.get_logger(__name__)


class ObjectStorageClient:
    """Object storage client using MinIO (S3-compatible).

    Presigning is computed locally by the MinIO SDK (no request is made when
    the region is configured). Uploads go through plain HTTP PUT against the
    presigned URL, exactly as any external uploader would.
    """

    def __init__(
        self,
        minio: Minio,
        public_base_url: str,
        upload_timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize storage client.

        Args:
            minio: Configured MinIO SDK client (credentials and region)
            public_base_url: Base URL for public object links (http://host:port)
            upload_timeout: Timeout in seconds for a single PUT
            transport: Optional httpx transport (used by tests)
        """
        self.minio = minio
        self.public_base_url = public_base_url.rstrip("/")
        self.upload_timeout = upload_timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "ObjectStorageClient":
        """Build a client from application settings."""
        minio = Minio(
            f"{settings.minio_endpoint}:{settings.minio_port}",
            access_key=settings.minio_access_key,
            secret_key=settings.minio_secret_key,
            secure=settings.minio_use_ssl,
            region=settings.minio_region,
        )
        return cls(
            minio=minio,
            public_base_url=settings.minio_public_base_url,
            upload_timeout=settings.upload_timeout_seconds,
        )

    def get_file_url(self, bucket: str, object_name: str) -> str:
        """Public URL of an object (bucket policy grants anonymous read)."""
        return f"{self.public_base_url}/{bucket}/{object_name}"

    async def presign_put(
        self, bucket: str, object_name: str, ttl_seconds: int
    ) -> UploadCredentials:
        """Mint a presigned PUT URL for one object.

        Args:
            bucket: Destination bucket
            object_name: Destination object key
            ttl_seconds: URL validity in seconds

        Returns:
            Upload credentials with the URL and its expiry (naive UTC)

        Raises:
            StorageNetworkError: SDK failed to sign (e.g. region lookup failed)
        """
        # Expiry computed before signing so it never overstates validity
        expires_at = utcnow() + timedelta(seconds=ttl_seconds)
        try:
            url = await asyncio.to_thread(
                self.minio.presigned_put_object,
                bucket,
                object_name,
                expires=timedelta(seconds=ttl_seconds),
            )
        except MinioException as e:
            raise StorageNetworkError(f"Failed to presign {bucket}/{object_name}: {e}") from e

        return UploadCredentials(upload_url=url, expires_at=expires_at)

    async def put_object(
        self,
        upload_url: str,
        data: bytes,
        headers: Optional[dict] = None,
        method: str = "PUT",
    ) -> None:
        """Upload bytes to a presigned URL.

        Args:
            upload_url: Presigned URL
            data: Object content
            headers: Extra request headers (Content-Type, signed headers)
            method: HTTP method the URL was signed for (default: PUT)

        Raises:
            StorageRejectionError: Destination answered with a non-2xx status
            StorageNetworkError: Timeout or transport failure
        """
        try:
            async with httpx.AsyncClient(
                timeout=self.upload_timeout, transport=self.transport
            ) as client:
                response = await client.request(
                    method, upload_url, content=data, headers=headers or {}
                )
        except httpx.TimeoutException as e:
            raise StorageNetworkError(
                f"Upload timeout after {self.upload_timeout}s: {e}"
            ) from e
        except httpx.HTTPError as e:
            raise StorageNetworkError(f"Upload network error: {e}") from e

        if not response.is_success:
            raise StorageRejectionError(
                f"Upload rejected ({response.status_code}): {response.text[:200]}",
                status_code=response.status_code,
            )

        logger.debug("storage.put_object.succeeded", size_bytes=len(data))
