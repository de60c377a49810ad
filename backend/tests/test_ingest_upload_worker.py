"""Tests for the ingest upload worker.

Uses in-memory Alist/storage fakes and a file-backed SQLite task store, so the
full claim -> refresh -> download -> upload -> record cycle is exercised.
"""

import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update
from sqlalchemy.exc import OperationalError

from alcms_ingest.core.timezone import utcnow
from alcms_ingest.models.ingest_upload import IngestUploadStatus, IngestUploadTask
from alcms_ingest.repositories.ingest_upload import IngestUploadRepository
from alcms_ingest.services.exceptions import (
    SourceFileError,
    StoreUnavailableError,
    TransientSourceError,
)
from alcms_ingest.workers.ingest_upload_worker import (
    TaskOutcome,
    process_pending,
    process_task,
    resolve_options,
    run_ingest_upload_worker,
)

PATH = "/library/album-1/cover.jpg"


async def _seed(session_factory, descriptor):
    async with session_factory() as session:
        task = await IngestUploadRepository(session).upsert(descriptor)
        await session.commit()
        return task


async def _reload(session_factory, task_id):
    async with session_factory() as session:
        return await IngestUploadRepository(session).get_by_id(task_id)


class StatusRecordingStorage:
    """Wraps FakeStorage and records the task's stored status at upload time."""

    def __init__(self, inner, session_factory, task_id):
        self.inner = inner
        self.session_factory = session_factory
        self.task_id = task_id
        self.status_during_upload = None

    async def presign_put(self, bucket, object_name, ttl_seconds):
        return await self.inner.presign_put(bucket, object_name, ttl_seconds)

    async def put_object(self, upload_url, data, headers=None, method="PUT"):
        row = await _reload(self.session_factory, self.task_id)
        self.status_during_upload = row.status
        await self.inner.put_object(upload_url, data, headers=headers, method=method)


def test_resolve_options(settings):
    assert resolve_options(settings) == (20, 4)
    assert resolve_options(settings, batch_size=5) == (5, 4)
    # Concurrency is capped by the batch size
    assert resolve_options(settings, batch_size=3, concurrency=10) == (3, 3)
    assert resolve_options(settings, batch_size=0, concurrency=0) == (20, 4)
    assert resolve_options(settings, batch_size=-2, concurrency=8) == (1, 1)


@pytest.mark.asyncio
async def test_end_to_end_upload_and_reupload(
    session_factory, settings, fake_source, fake_storage, make_descriptor
):
    """Scenario: file discovered, mirrored, then changed and mirrored again."""
    task = await _seed(session_factory, make_descriptor())
    fake_source.files[PATH] = b"\xff\xd8jpeg-bytes"

    summary = await process_pending(session_factory, fake_source, fake_storage, settings)

    assert summary.completed == 1
    assert summary.failed == 0
    assert fake_source.calls == [PATH]
    assert fake_storage.presigned == []  # stored credential was still fresh
    assert fake_storage.uploads == [
        {
            "url": "https://minio.local/presigned/initial",
            "data": b"\xff\xd8jpeg-bytes",
            "headers": {"Content-Type": "image/jpeg"},
            "method": "PUT",
        }
    ]
    stored = await _reload(session_factory, task.id)
    assert stored.status == IngestUploadStatus.COMPLETED
    assert stored.retry_count == 0

    # Nothing left to do
    idle = await process_pending(session_factory, fake_source, fake_storage, settings)
    assert idle.total == 0
    assert idle.polls == 1

    # Source file changes: the task is reset and uploaded again
    changed = make_descriptor(
        file_modified_at=datetime(2024, 6, 1, 12, 0, 0),
        upload_url="https://minio.local/presigned/second",
    )
    reset = await _seed(session_factory, changed)
    assert reset.id == task.id
    assert reset.status == IngestUploadStatus.PENDING
    fake_source.files[PATH] = b"\xff\xd8new-jpeg-bytes"

    summary = await process_pending(session_factory, fake_source, fake_storage, settings)

    assert summary.completed == 1
    assert len(fake_storage.uploads) == 2
    assert fake_storage.uploads[1]["url"] == "https://minio.local/presigned/second"
    assert fake_storage.uploads[1]["data"] == b"\xff\xd8new-jpeg-bytes"
    stored = await _reload(session_factory, task.id)
    assert stored.status == IngestUploadStatus.COMPLETED


@pytest.mark.asyncio
async def test_failed_task_is_retried_on_next_run(
    session_factory, settings, fake_source, fake_storage, make_descriptor
):
    """Scenario: transient Alist error, then recovery on the following run."""
    task = await _seed(session_factory, make_descriptor())
    fake_source.errors[PATH] = TransientSourceError("Alist server error (502)")

    summary = await process_pending(session_factory, fake_source, fake_storage, settings)

    assert summary.failed == 1
    assert summary.completed == 0
    stored = await _reload(session_factory, task.id)
    assert stored.status == IngestUploadStatus.FAILED
    assert stored.retry_count == 1
    assert stored.last_error == "Alist server error (502)"
    assert stored.claimed_at is None

    async with session_factory() as session:
        pending = await IngestUploadRepository(session).find_pending(limit=10)
    assert [t.id for t in pending] == [task.id]

    del fake_source.errors[PATH]
    fake_source.files[PATH] = b"jpeg"

    summary = await process_pending(session_factory, fake_source, fake_storage, settings)

    assert summary.completed == 1
    stored = await _reload(session_factory, task.id)
    assert stored.status == IngestUploadStatus.COMPLETED
    assert stored.retry_count == 0
    assert stored.last_error is None


@pytest.mark.asyncio
async def test_failing_task_is_attempted_once_per_run(
    session_factory, settings, fake_source, fake_storage, make_descriptor
):
    """A permanently failing file does not keep process_pending looping."""
    task = await _seed(session_factory, make_descriptor())
    fake_source.errors[PATH] = SourceFileError("Alist object not found: /library/album-1/cover.jpg")

    summary = await process_pending(session_factory, fake_source, fake_storage, settings)

    assert summary.failed == 1
    assert summary.polls == 2
    assert fake_source.calls == [PATH]
    stored = await _reload(session_factory, task.id)
    assert stored.retry_count == 1


@pytest.mark.asyncio
async def test_storage_rejection_marks_task_failed(
    session_factory, settings, fake_source, fake_storage, make_descriptor
):
    task = await _seed(session_factory, make_descriptor())
    fake_source.files[PATH] = b"jpeg"
    fake_storage.reject_status = 403

    summary = await process_pending(session_factory, fake_source, fake_storage, settings)

    assert summary.failed == 1
    stored = await _reload(session_factory, task.id)
    assert stored.status == IngestUploadStatus.FAILED
    assert "403" in stored.last_error


@pytest.mark.asyncio
async def test_concurrency_is_bounded(
    session_factory, settings, fake_source, slow_storage, make_descriptor
):
    """No more than `concurrency` transfers are ever in flight."""
    storage = slow_storage
    for i in range(10):
        descriptor = make_descriptor(file_name=f"photo-{i}.png", content_type="image/png")
        await _seed(session_factory, descriptor)
        fake_source.files[descriptor.alist_file_path] = f"png-{i}".encode()

    summary = await process_pending(
        session_factory, fake_source, storage, settings, batch_size=5, concurrency=3
    )

    assert summary.completed == 10
    assert summary.failed == 0
    assert storage.max_in_flight <= 3
    assert fake_source.max_in_flight <= 3
    assert {u["headers"]["Content-Type"] for u in storage.uploads} == {"image/png"}


@pytest.mark.asyncio
async def test_claim_conflict_is_skipped(
    session_factory, settings, fake_source, fake_storage, make_descriptor
):
    """A task claimed by another worker is left alone."""
    task = await _seed(session_factory, make_descriptor())
    fake_source.files[PATH] = b"jpeg"

    async with session_factory() as session:
        await IngestUploadRepository(session).mark_processing(task.id)
        await session.commit()

    outcome = await process_task(task, session_factory, fake_source, fake_storage, settings)

    assert outcome == TaskOutcome.SKIPPED
    assert fake_source.calls == []
    assert fake_storage.uploads == []
    stored = await _reload(session_factory, task.id)
    assert stored.status == IngestUploadStatus.PROCESSING


@pytest.mark.asyncio
async def test_expiring_credential_is_refreshed_before_upload(
    session_factory, settings, fake_source, fake_storage, make_descriptor
):
    """Scenario: stored URL expires in 2 minutes (inside the 5 minute buffer).

    The worker mints a new URL, persists it without releasing its claim and
    uploads to the new URL.
    """
    task = await _seed(
        session_factory,
        make_descriptor(
            upload_url="https://minio.local/presigned/stale",
            expires_at=utcnow() + timedelta(minutes=2),
        ),
    )
    fake_source.files[PATH] = b"jpeg"
    storage = StatusRecordingStorage(fake_storage, session_factory, task.id)

    outcome = await process_task(task, session_factory, fake_source, storage, settings)

    assert outcome == TaskOutcome.COMPLETED
    assert fake_storage.presigned == [("alcms-images", task.object_name, 3600)]
    assert storage.status_during_upload == IngestUploadStatus.PROCESSING
    assert len(fake_storage.uploads) == 1
    new_url = fake_storage.uploads[0]["url"]
    assert new_url != "https://minio.local/presigned/stale"

    stored = await _reload(session_factory, task.id)
    assert stored.status == IngestUploadStatus.COMPLETED
    assert stored.upload_url == new_url
    assert stored.expires_at > utcnow() + timedelta(minutes=55)


@pytest.mark.asyncio
async def test_store_outage_propagates(settings, fake_source, fake_storage):
    """Task store connectivity errors abort the run instead of being recorded."""

    def unreachable_store():
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    with pytest.raises(StoreUnavailableError):
        await process_pending(unreachable_store, fake_source, fake_storage, settings)


@pytest.mark.asyncio
async def test_worker_loop_processes_until_cancelled(
    session_factory, settings, fake_source, fake_storage, make_descriptor
):
    task = await _seed(session_factory, make_descriptor())
    fake_source.files[PATH] = b"jpeg"

    worker = asyncio.create_task(
        run_ingest_upload_worker(session_factory, fake_source, fake_storage, settings)
    )
    for _ in range(200):
        stored = await _reload(session_factory, task.id)
        if stored.status == IngestUploadStatus.COMPLETED:
            break
        await asyncio.sleep(0.01)

    worker.cancel()
    with pytest.raises(asyncio.CancelledError):
        await worker

    assert len(fake_storage.uploads) == 1
    stored = await _reload(session_factory, task.id)
    assert stored.status == IngestUploadStatus.COMPLETED


class RediscoveringStorage:
    """Wraps FakeStorage; the source file changes while the first upload runs."""

    def __init__(self, inner, session_factory, source, changed_descriptor, new_content):
        self.inner = inner
        self.session_factory = session_factory
        self.source = source
        self.changed_descriptor = changed_descriptor
        self.new_content = new_content
        self.rediscovered = False

    async def presign_put(self, bucket, object_name, ttl_seconds):
        return await self.inner.presign_put(bucket, object_name, ttl_seconds)

    async def put_object(self, upload_url, data, headers=None, method="PUT"):
        await self.inner.put_object(upload_url, data, headers=headers, method=method)
        if not self.rediscovered:
            self.rediscovered = True
            self.source.files[PATH] = self.new_content
            await _seed(self.session_factory, self.changed_descriptor)


@pytest.mark.asyncio
async def test_change_detected_during_upload_is_not_lost(
    session_factory, settings, fake_source, fake_storage, make_descriptor
):
    """Scenario: the file changes while its previous version is being uploaded.

    The rediscovery re-queues the task, so the in-flight worker must not mark
    it completed; the next run mirrors the new bytes.
    """
    task = await _seed(session_factory, make_descriptor())
    fake_source.files[PATH] = b"old"
    storage = RediscoveringStorage(
        fake_storage,
        session_factory,
        fake_source,
        make_descriptor(file_modified_at=datetime(2024, 6, 1, 12, 0, 0)),
        b"new",
    )

    summary = await process_pending(session_factory, fake_source, storage, settings)

    assert summary.completed == 0
    assert summary.skipped == 1
    stored = await _reload(session_factory, task.id)
    assert stored.status == IngestUploadStatus.PENDING
    assert stored.file_modified_at == datetime(2024, 6, 1, 12, 0, 0)

    summary = await process_pending(session_factory, fake_source, storage, settings)

    assert summary.completed == 1
    assert [u["data"] for u in fake_storage.uploads] == [b"old", b"new"]
    stored = await _reload(session_factory, task.id)
    assert stored.status == IngestUploadStatus.COMPLETED


@pytest.mark.asyncio
async def test_failure_after_lost_claim_is_not_recorded(
    session_factory, settings, fake_source, fake_storage, make_descriptor
):
    """A worker whose claim was taken over does not overwrite the new holder's result."""
    task = await _seed(session_factory, make_descriptor())

    class TakeoverSource:
        async def get_file_content(self, path):
            # Another worker reclaims the task and finishes it meanwhile
            async with session_factory() as session:
                repo = IngestUploadRepository(session)
                await session.execute(
                    update(IngestUploadTask)
                    .where(IngestUploadTask.id == task.id)  # type: ignore[arg-type]
                    .values(claimed_at=utcnow() - timedelta(hours=1))
                )
                reclaimed = await repo.mark_processing(task.id)
                await repo.mark_completed(task.id, claimed_at=reclaimed.claimed_at)
                await session.commit()
            raise TransientSourceError("Alist server error (502)")

    outcome = await process_task(task, session_factory, TakeoverSource(), fake_storage, settings)

    assert outcome == TaskOutcome.SKIPPED
    stored = await _reload(session_factory, task.id)
    assert stored.status == IngestUploadStatus.COMPLETED
    assert stored.retry_count == 0
    assert stored.last_error is None
