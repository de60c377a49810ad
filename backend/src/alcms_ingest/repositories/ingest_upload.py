"""IngestUploadTask repository.

Provides data access and state-transition methods for ingest upload tasks.
Worker coordination relies on a single conditional UPDATE ... RETURNING
(mark_processing); no row is ever claimed with a read-then-write.
"""

from datetime import datetime, timedelta
from typing import Any, Collection
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from alcms_ingest.core.timezone import to_naive_utc, utcnow
from alcms_ingest.models.ingest_upload import (
    CLAIMABLE_STATUSES,
    LAST_ERROR_MAX_LENGTH,
    IngestUploadDescriptor,
    IngestUploadStatus,
    IngestUploadTask,
    UploadCredentials,
)
from alcms_ingest.services.ingest.credentials import is_fresher_credential

DEFAULT_PROCESSING_LEASE_SECONDS = 1800


class IngestUploadRepository:
    """Repository for IngestUploadTask entities.

    Methods flush but never commit; the caller owns the transaction.
    """

    def __init__(
        self,
        session: AsyncSession,
        processing_lease_seconds: int = DEFAULT_PROCESSING_LEASE_SECONDS,
    ):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
            processing_lease_seconds: How long a claim stays exclusive before a
                'processing' task is considered abandoned. 0 disables reclaiming.
        """
        self.session = session
        self.processing_lease_seconds = processing_lease_seconds

    def _claimable_condition(self):
        """WHERE clause matching tasks a worker may claim right now."""
        claimable = IngestUploadTask.status.in_(CLAIMABLE_STATUSES)  # type: ignore[attr-defined]
        if self.processing_lease_seconds <= 0:
            return claimable

        lease_cutoff = utcnow() - timedelta(seconds=self.processing_lease_seconds)
        stale_claim = and_(
            IngestUploadTask.status == IngestUploadStatus.PROCESSING,  # type: ignore[arg-type]
            or_(
                IngestUploadTask.claimed_at.is_(None),  # type: ignore[union-attr]
                IngestUploadTask.claimed_at < lease_cutoff,  # type: ignore[operator]
            ),
        )
        return or_(claimable, stale_claim)

    @staticmethod
    def _claim_held(claimed_at: datetime | None) -> tuple:
        """WHERE clause fencing a write to the claim identified by claimed_at.

        An empty tuple (no fence) when claimed_at is None.
        """
        if claimed_at is None:
            return ()
        return (
            IngestUploadTask.status == IngestUploadStatus.PROCESSING,  # type: ignore[arg-type]
            IngestUploadTask.claimed_at == to_naive_utc(claimed_at),  # type: ignore[arg-type]
        )

    async def _update_returning(self, task_id: UUID, *conditions, **values: Any):
        """Apply a single-row UPDATE and return the refreshed row (or None)."""
        values.setdefault("updated_at", utcnow())
        stmt = (
            update(IngestUploadTask)
            .where(IngestUploadTask.id == task_id, *conditions)  # type: ignore[arg-type]
            .values(**values)
            .returning(IngestUploadTask)
            .execution_options(populate_existing=True, synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_id(self, task_id: UUID) -> IngestUploadTask | None:
        """Retrieve task by UUID.

        Args:
            task_id: Task's unique identifier

        Returns:
            IngestUploadTask if found, None otherwise
        """
        result = await self.session.execute(
            select(IngestUploadTask).where(IngestUploadTask.id == task_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def find_by_natural_key(
        self, setting_id: int, alist_file_path: str
    ) -> IngestUploadTask | None:
        """Retrieve task by its natural key (setting_id, alist_file_path)."""
        result = await self.session.execute(
            select(IngestUploadTask).where(
                IngestUploadTask.setting_id == setting_id,  # type: ignore[arg-type]
                IngestUploadTask.alist_file_path == alist_file_path,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def create(self, descriptor: IngestUploadDescriptor) -> IngestUploadTask:
        """Persist a new pending task built from a producer descriptor.

        Args:
            descriptor: Discovered file description

        Returns:
            Persisted task with status='pending' and retry_count=0
        """
        data = descriptor.model_dump()
        data["file_modified_at"] = to_naive_utc(descriptor.file_modified_at)
        data["expires_at"] = to_naive_utc(descriptor.expires_at)
        data["upload_method"] = descriptor.upload_method or "PUT"
        task = IngestUploadTask(
            **data,
            status=IngestUploadStatus.PENDING,
            retry_count=0,
        )
        self.session.add(task)
        await self.session.flush()
        return task

    async def upsert(self, descriptor: IngestUploadDescriptor) -> IngestUploadTask:
        """Create or update the task for a (re)discovered source file.

        Decision order:
        1. No task for the natural key: create it.
        2. Source file changed (file_modified_at differs) or task failed:
           full reset to pending with fresh destination and credential fields.
        3. Descriptor credential expires strictly later than the stored one:
           replace credential fields only, status untouched.
        4. Descriptive metadata (resource_id, folder_path, file_name) is
           refreshed in every case.

        Nothing is written when no column value changes.

        Args:
            descriptor: Discovered file description

        Returns:
            Resulting task row (unchanged row if nothing applied)
        """
        existing = await self.find_by_natural_key(descriptor.setting_id, descriptor.alist_file_path)
        if existing is None:
            return await self.create(descriptor)

        new_modified_at = to_naive_utc(descriptor.file_modified_at)
        new_expires_at = to_naive_utc(descriptor.expires_at)
        source_changed = new_modified_at is not None and (
            existing.file_modified_at is None or existing.file_modified_at != new_modified_at
        )

        changes: dict[str, Any] = {}
        if source_changed or existing.status == IngestUploadStatus.FAILED:
            changes.update(
                status=IngestUploadStatus.PENDING,
                retry_count=0,
                last_error=None,
                claimed_at=None,
                file_size=descriptor.file_size or 0,
                bucket=descriptor.bucket,
                object_name=descriptor.object_name,
                file_url=descriptor.file_url,
                upload_url=descriptor.upload_url,
                upload_method=descriptor.upload_method or "PUT",
                upload_headers=descriptor.upload_headers,
                content_type=descriptor.content_type,
                expires_at=new_expires_at,
            )
            if source_changed:
                changes["file_modified_at"] = new_modified_at
        elif descriptor.upload_url and is_fresher_credential(existing.expires_at, new_expires_at):
            changes.update(
                upload_url=descriptor.upload_url,
                upload_headers=descriptor.upload_headers,
                expires_at=new_expires_at,
            )

        changes.update(
            resource_id=descriptor.resource_id,
            folder_path=descriptor.folder_path,
            file_name=descriptor.file_name,
        )

        changes = {key: value for key, value in changes.items() if getattr(existing, key) != value}
        if not changes:
            return existing

        updated = await self._update_returning(existing.id, **changes)
        return updated or existing

    async def find_pending(
        self, limit: int = 5, exclude_ids: Collection[UUID] | None = None
    ) -> list[IngestUploadTask]:
        """Retrieve tasks a worker may claim, oldest update first.

        Query explanation:
        - WHERE status IN ('pending', 'failed'): retryable tasks
        - OR status = 'processing' with an expired claim lease: abandoned by a
          crashed worker
        - AND id NOT IN (exclude_ids): tasks the caller already attempted
        - ORDER BY updated_at ASC: repeatedly failing tasks are not starved
        - LIMIT: Batch size for worker

        Args:
            limit: Maximum number of tasks to retrieve (default: 5)
            exclude_ids: Task ids to leave out of this poll

        Returns:
            List of claim candidates (not locked; claim with mark_processing)
        """
        stmt = select(IngestUploadTask).where(self._claimable_condition())
        if exclude_ids:
            stmt = stmt.where(IngestUploadTask.id.not_in(list(exclude_ids)))  # type: ignore[attr-defined]
        result = await self.session.execute(
            stmt.order_by(IngestUploadTask.updated_at.asc()).limit(limit)  # type: ignore[attr-defined]
        )
        return list(result.scalars().all())

    async def mark_processing(self, task_id: UUID) -> IngestUploadTask | None:
        """Atomically claim a task: {pending, failed, stale processing} -> processing.

        Implemented as one UPDATE ... WHERE <claimable> RETURNING, so concurrent
        workers racing on the same row get exactly one winner.

        Args:
            task_id: Task to claim

        Returns:
            The claimed row, or None if another worker holds it or it is no
            longer eligible
        """
        now = utcnow()
        return await self._update_returning(
            task_id,
            self._claimable_condition(),
            status=IngestUploadStatus.PROCESSING,
            claimed_at=now,
            updated_at=now,
        )

    async def mark_completed(
        self, task_id: UUID, claimed_at: datetime | None = None
    ) -> IngestUploadTask | None:
        """Mark task as completed and clear failure bookkeeping.

        Args:
            task_id: Task to update
            claimed_at: claimed_at returned by mark_processing. When given, the
                write only applies while that claim is still held.

        Returns:
            Updated task, or None if the claim was lost (task re-queued by a
            rediscovery or reclaimed after its lease expired)
        """
        return await self._update_returning(
            task_id,
            *self._claim_held(claimed_at),
            status=IngestUploadStatus.COMPLETED,
            retry_count=0,
            last_error=None,
            claimed_at=None,
        )

    async def mark_failed(
        self,
        task_id: UUID,
        error_message: str | None,
        claimed_at: datetime | None = None,
    ) -> IngestUploadTask | None:
        """Mark task as failed and increment its retry counter.

        Args:
            task_id: Task to update
            error_message: Error description (truncated to 500 characters)
            claimed_at: Claim fence, as for mark_completed

        Returns:
            Updated task, or None if the claim was lost
        """
        return await self._update_returning(
            task_id,
            *self._claim_held(claimed_at),
            status=IngestUploadStatus.FAILED,
            retry_count=IngestUploadTask.retry_count + 1,
            last_error=error_message[:LAST_ERROR_MAX_LENGTH] if error_message else None,
            claimed_at=None,
        )

    async def refresh_upload_credentials(
        self,
        task_id: UUID,
        credentials: UploadCredentials,
        release_claim: bool = True,
        claimed_at: datetime | None = None,
    ) -> IngestUploadTask | None:
        """Overwrite the credential bundle of a task.

        Args:
            task_id: Task to update
            credentials: Newly minted presigned credential
            release_claim: Put the task back to 'pending' (default). The upload
                worker passes False so the task stays claimed while it uploads.
            claimed_at: Claim fence, as for mark_completed

        Returns:
            Updated task, or None if it does not exist or the claim was lost
        """
        values: dict[str, Any] = {
            "upload_url": credentials.upload_url,
            "upload_headers": credentials.upload_headers,
            "expires_at": to_naive_utc(credentials.expires_at),
        }
        if release_claim:
            values["status"] = IngestUploadStatus.PENDING
            values["claimed_at"] = None
        return await self._update_returning(task_id, *self._claim_held(claimed_at), **values)
