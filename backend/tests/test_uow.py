"""Unit of Work pattern tests.

Tests focus on transaction management:
- Successful commits persist changes
- Exceptions trigger rollback
- The configured claim lease reaches the repository
"""

import pytest

from alcms_ingest.models.ingest_upload import IngestUploadStatus
from alcms_ingest.uow import create_uow_factory


@pytest.mark.asyncio
async def test_uow_commits_on_successful_exit(uow_factory, make_descriptor):
    """Test that UoW commits changes when exiting successfully.

    Changes made within the context should persist after the context exits.
    """
    async with await uow_factory() as uow:
        task = await uow.ingest_uploads.upsert(make_descriptor())
        task_id = task.id
        # Context exits successfully - should commit

    # Verify changes persisted in a new UoW context
    async with await uow_factory() as uow:
        found = await uow.ingest_uploads.get_by_id(task_id)
        assert found is not None
        assert found.status == IngestUploadStatus.PENDING
        assert found.alist_file_path == "/library/album-1/cover.jpg"


@pytest.mark.asyncio
async def test_uow_rollback_on_exception(uow_factory, make_descriptor):
    """Test that UoW rolls back changes when an exception occurs.

    If an exception is raised within the context:
    1. Changes should be rolled back
    2. Exception should propagate (not be swallowed)
    """
    with pytest.raises(ValueError, match="Simulated error"):
        async with await uow_factory() as uow:
            await uow.ingest_uploads.upsert(make_descriptor())

            # Raise exception - should trigger rollback AND propagate
            raise ValueError("Simulated error")

    async with await uow_factory() as uow:
        found = await uow.ingest_uploads.find_by_natural_key(1, "/library/album-1/cover.jpg")
        assert found is None, "Task should not exist after rollback"


@pytest.mark.asyncio
async def test_uow_passes_processing_lease(session_factory):
    uow_factory = create_uow_factory(session_factory, processing_lease_seconds=60)

    async with await uow_factory() as uow:
        assert uow.ingest_uploads.processing_lease_seconds == 60
