"""Presigned upload credential policy.

Shared by the upload worker (in-flight refresh before a transfer) and the
producer helper (refresh at discovery time), so both use the same buffer and TTL.
"""

from datetime import datetime, timedelta
from typing import Optional, Protocol

import structlog

from alcms_ingest.core.timezone import to_naive_utc, utcnow
from alcms_ingest.models.ingest_upload import UploadCredentials

logger = structlog.get_logger(__name__)

SAFETY_BUFFER = timedelta(minutes=5)
CREDENTIAL_TTL_SECONDS = 60 * 60


class PresignedUploadIssuer(Protocol):
    """Anything able to mint presigned PUT credentials (ObjectStorageClient)."""

    async def presign_put(
        self, bucket: str, object_name: str, ttl_seconds: int
    ) -> UploadCredentials: ...


def is_credential_usable(
    upload_url: Optional[str],
    expires_at: Optional[datetime],
    now: Optional[datetime] = None,
) -> bool:
    """Return True if the credential still has at least SAFETY_BUFFER of validity."""
    if not upload_url or expires_at is None:
        return False
    now = to_naive_utc(now) or utcnow()
    return to_naive_utc(expires_at) - now >= SAFETY_BUFFER


def is_fresher_credential(
    stored_expires_at: Optional[datetime], new_expires_at: Optional[datetime]
) -> bool:
    """Monotonic refresh rule: only a strictly later expiry replaces the stored one."""
    if new_expires_at is None:
        return False
    if stored_expires_at is None:
        return True
    return to_naive_utc(stored_expires_at) < to_naive_utc(new_expires_at)


async def ensure_fresh_credential(
    storage: PresignedUploadIssuer,
    bucket: str,
    object_name: str,
    upload_url: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    *,
    force: bool = False,
    now: Optional[datetime] = None,
    ttl_seconds: int = CREDENTIAL_TTL_SECONDS,
) -> UploadCredentials | None:
    """Mint a new presigned PUT credential when the current one is not usable.

    Args:
        storage: Credential issuer (object storage client)
        bucket: Destination bucket
        object_name: Destination object key
        upload_url: Currently stored presigned URL, if any
        expires_at: Expiry of the stored URL, if any
        force: Mint a new credential even if the stored one is still usable
        now: Reference time (defaults to current UTC time)
        ttl_seconds: Lifetime of a newly minted credential

    Returns:
        New credentials, or None when the stored credential can be reused
    """
    if not force and is_credential_usable(upload_url, expires_at, now):
        return None

    credentials = await storage.presign_put(bucket, object_name, ttl_seconds)
    logger.debug(
        "ingest.credentials.minted",
        bucket=bucket,
        object_name=object_name,
        expires_at=credentials.expires_at.isoformat(),
        forced=force,
    )
    return credentials
