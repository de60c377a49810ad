"""Alist ingest upload worker.

Drains ingest upload tasks with status 'pending' or 'failed': claims each task,
makes sure its presigned URL is still valid, copies the file from Alist to
object storage and records the outcome.

Session handling is session-per-operation: every store call opens, commits
and closes its own session, so no transaction stays open across a network
transfer and one task's failure never rolls back another task's bookkeeping.

Only StoreUnavailableError escapes process_task/process_pending. Every other
error is persisted on the task (status='failed', retry_count + 1) and the task
is retried on a later poll.

Every write after the claim is fenced on the claimed_at stamped by
mark_processing. If a rediscovery re-queued the task or another worker
reclaimed it after the lease expired, the write matches no row and this
worker records nothing.
"""

import asyncio
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator, Callable, Optional, Protocol
from uuid import UUID

import structlog
from sqlalchemy.exc import InterfaceError, OperationalError

from alcms_ingest.core.config import Settings
from alcms_ingest.models.ingest_upload import IngestUploadTask, UploadCredentials
from alcms_ingest.repositories.ingest_upload import IngestUploadRepository
from alcms_ingest.services.exceptions import ClaimLostError, StoreUnavailableError
from alcms_ingest.services.ingest.credentials import ensure_fresh_credential

logger = structlog.get_logger(__name__)

DEFAULT_CONTENT_TYPE = "application/octet-stream"


class SourceReader(Protocol):
    """External source contract (AlistClient)."""

    async def get_file_content(self, path: str) -> bytes: ...


class ObjectUploader(Protocol):
    """Object storage contract (ObjectStorageClient)."""

    async def presign_put(
        self, bucket: str, object_name: str, ttl_seconds: int
    ) -> UploadCredentials: ...

    async def put_object(
        self,
        upload_url: str,
        data: bytes,
        headers: Optional[dict] = None,
        method: str = "PUT",
    ) -> None: ...


class TaskOutcome(str, Enum):
    """Result of processing a single task."""

    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ProcessSummary:
    """Counters for one process_pending run."""

    polls: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.completed + self.failed + self.skipped

    def record(self, outcome: TaskOutcome) -> None:
        if outcome is TaskOutcome.COMPLETED:
            self.completed += 1
        elif outcome is TaskOutcome.FAILED:
            self.failed += 1
        else:
            self.skipped += 1


def resolve_options(
    settings: Settings,
    batch_size: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> tuple[int, int]:
    """Resolve batch size and concurrency, falling back to settings.

    Concurrency never exceeds the batch size and both are at least 1.

    Returns:
        (batch_size, concurrency)
    """
    resolved_batch = max(1, batch_size or settings.alist_upload_batch_size)
    resolved_concurrency = max(
        1, min(resolved_batch, concurrency or settings.alist_upload_concurrency)
    )
    return resolved_batch, resolved_concurrency


@asynccontextmanager
async def store_session(
    session_factory: Callable, settings: Settings
) -> AsyncIterator[IngestUploadRepository]:
    """Open a session, yield a repository, commit on success.

    Connectivity failures of the task store are re-raised as
    StoreUnavailableError.
    """
    try:
        async with session_factory() as session:
            repo = IngestUploadRepository(
                session, processing_lease_seconds=settings.processing_lease_seconds
            )
            try:
                yield repo
                await session.commit()
            except BaseException:
                await session.rollback()
                raise
    except (OperationalError, InterfaceError) as e:
        raise StoreUnavailableError(f"Task store unavailable: {e}") from e


async def _upload(
    task: IngestUploadTask,
    session_factory: Callable,
    source: SourceReader,
    storage: ObjectUploader,
    settings: Settings,
) -> None:
    """Refresh credentials if needed, then copy the file to its presigned URL."""
    upload_url = task.upload_url
    credentials = await ensure_fresh_credential(
        storage, task.bucket, task.object_name, task.upload_url, task.expires_at
    )
    if credentials is not None:
        # Keep the claim: the row must stay 'processing' while we upload
        async with store_session(session_factory, settings) as repo:
            refreshed = await repo.refresh_upload_credentials(
                task.id, credentials, release_claim=False, claimed_at=task.claimed_at
            )
        if refreshed is None:
            raise ClaimLostError(f"Claim on task {task.id} lost before upload")
        upload_url = credentials.upload_url
        logger.info(
            "ingest.credentials.refreshed",
            task_id=str(task.id),
            expires_at=credentials.expires_at.isoformat(),
        )

    content = await source.get_file_content(task.alist_file_path)

    headers = {"Content-Type": task.content_type or DEFAULT_CONTENT_TYPE}
    await storage.put_object(upload_url, content, headers=headers, method=task.upload_method or "PUT")


def _claim_lost(task: IngestUploadTask) -> TaskOutcome:
    """Log that the claim was lost; the current holder records the outcome."""
    logger.warning(
        "ingest.claim.lost",
        task_id=str(task.id),
        resource_id=task.resource_id,
        file=task.file_name,
    )
    return TaskOutcome.SKIPPED


async def process_task(
    task: IngestUploadTask,
    session_factory: Callable,
    source: SourceReader,
    storage: ObjectUploader,
    settings: Settings,
) -> TaskOutcome:
    """Claim and process a single task.

    Workflow:
    1. Claim atomically (mark_processing); another worker winning is a no-op
    2. Refresh the presigned URL if it expires within the safety buffer
    3. Download the file from Alist
    4. PUT it to the presigned URL with the task's content type
    5. Mark completed, or mark failed with the error message, provided the
       claim is still held (otherwise the attempt is reported as skipped)

    Args:
        task: Candidate task from find_pending (detached)
        session_factory: Factory function to create new database sessions
        source: Alist client
        storage: Object storage client
        settings: Application settings

    Returns:
        Outcome of this attempt

    Raises:
        StoreUnavailableError: Task store could not be reached
    """
    async with store_session(session_factory, settings) as repo:
        claimed = await repo.mark_processing(task.id)

    if claimed is None:
        logger.debug("ingest.claim.skipped", task_id=str(task.id))
        return TaskOutcome.SKIPPED

    start_time = time.time()
    attempt_number = claimed.retry_count + 1
    logger.info(
        "ingest.upload.started",
        task_id=str(claimed.id),
        resource_id=claimed.resource_id,
        file=claimed.file_name,
        attempt_number=attempt_number,
    )

    claim = claimed.claimed_at

    try:
        await _upload(claimed, session_factory, source, storage, settings)
    except StoreUnavailableError:
        raise
    except ClaimLostError:
        return _claim_lost(claimed)
    except Exception as e:
        async with store_session(session_factory, settings) as repo:
            failed = await repo.mark_failed(
                claimed.id, str(e) or type(e).__name__, claimed_at=claim
            )
        if failed is None:
            return _claim_lost(claimed)
        logger.error(
            "ingest.upload.failed",
            task_id=str(claimed.id),
            resource_id=claimed.resource_id,
            file=claimed.file_name,
            error_type=type(e).__name__,
            error_message=str(e),
            attempt_number=attempt_number,
        )
        return TaskOutcome.FAILED

    async with store_session(session_factory, settings) as repo:
        completed = await repo.mark_completed(claimed.id, claimed_at=claim)
    if completed is None:
        return _claim_lost(claimed)

    logger.info(
        "ingest.upload.succeeded",
        task_id=str(claimed.id),
        resource_id=claimed.resource_id,
        file=claimed.file_name,
        duration_seconds=round(time.time() - start_time, 3),
        attempt_number=attempt_number,
    )
    return TaskOutcome.COMPLETED


async def process_pending(
    session_factory: Callable,
    source: SourceReader,
    storage: ObjectUploader,
    settings: Settings,
    batch_size: Optional[int] = None,
    concurrency: Optional[int] = None,
) -> ProcessSummary:
    """Drain claimable tasks in bounded batches with bounded concurrency.

    Polls up to batch_size tasks, runs them in consecutive chunks of
    `concurrency`, waits for a whole chunk to settle before starting the next,
    and polls again until a poll comes back empty. Tasks already attempted in
    this run are excluded from later polls.

    Args:
        session_factory: Factory function to create new database sessions
        source: Alist client
        storage: Object storage client
        settings: Application settings (defaults for batch size/concurrency)
        batch_size: Tasks per poll (default: ALIST_UPLOAD_BATCH_SIZE)
        concurrency: Simultaneous transfers (default: ALIST_UPLOAD_CONCURRENCY)

    Returns:
        Summary of outcomes for this run

    Raises:
        StoreUnavailableError: Task store could not be reached
    """
    batch_size, concurrency = resolve_options(settings, batch_size, concurrency)
    summary = ProcessSummary()
    # Each task is attempted at most once per run, so a task that keeps
    # failing cannot keep the run alive; it is retried on the next run
    attempted: set[UUID] = set()

    while True:
        async with store_session(session_factory, settings) as repo:
            tasks = await repo.find_pending(limit=batch_size, exclude_ids=attempted)
        summary.polls += 1

        if not tasks:
            break

        attempted.update(task.id for task in tasks)

        for i in range(0, len(tasks), concurrency):
            chunk = tasks[i : i + concurrency]
            results = await asyncio.gather(
                *(process_task(task, session_factory, source, storage, settings) for task in chunk),
                return_exceptions=True,
            )

            for task, result in zip(chunk, results):
                if isinstance(result, StoreUnavailableError):
                    raise result
                if isinstance(result, BaseException):
                    # Unreachable in practice: process_task records its own failures
                    logger.error(
                        "ingest.upload.unhandled",
                        task_id=str(task.id),
                        error_type=type(result).__name__,
                        error=str(result),
                    )
                    summary.record(TaskOutcome.FAILED)
                else:
                    summary.record(result)

    logger.info(
        "ingest.batch.drained",
        polls=summary.polls,
        completed=summary.completed,
        failed=summary.failed,
        skipped=summary.skipped,
    )
    return summary


async def run_ingest_upload_worker(
    session_factory: Callable,
    source: SourceReader,
    storage: ObjectUploader,
    settings: Settings,
) -> None:
    """Main worker loop for ingest uploads.

    Drains the queue, sleeps POLL_INTERVAL_SECONDS and repeats until cancelled.

    Args:
        session_factory: Factory function that creates database sessions
        source: Alist client
        storage: Object storage client
        settings: Application settings (poll interval, batch size, concurrency)
    """
    batch_size, concurrency = resolve_options(settings)
    logger.info(
        "worker.started",
        worker_type="ingest_upload",
        poll_interval=settings.poll_interval_seconds,
        batch_size=batch_size,
        concurrency=concurrency,
        processing_lease_seconds=settings.processing_lease_seconds,
    )

    try:
        while True:
            try:
                await process_pending(session_factory, source, storage, settings)

                await asyncio.sleep(settings.poll_interval_seconds)

            except asyncio.CancelledError:
                raise

            except Exception as e:
                # Store outage or unexpected error - log and retry after backoff
                logger.error(
                    "worker.error",
                    worker_type="ingest_upload",
                    error_type=type(e).__name__,
                    error_message=str(e),
                    exc_info=True,
                )
                await asyncio.sleep(5)

    except asyncio.CancelledError:
        logger.info("worker.stopped", worker_type="ingest_upload")
        raise
