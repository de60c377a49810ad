"""Unit of Work pattern for the ingestion pipeline.

Provides transaction management with automatic commit/rollback and access to the
ingest upload repository. Producers use it to upsert tasks; the upload worker
manages its own sessions (see workers/ingest_upload_worker.py).
"""

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alcms_ingest.repositories.ingest_upload import (
    DEFAULT_PROCESSING_LEASE_SECONDS,
    IngestUploadRepository,
)

logger = structlog.get_logger()


class UnitOfWork:
    """Unit of Work pattern implementation.

    Use as async context manager for automatic commit/rollback.

    Example:
        async with await uow_factory() as uow:
            task = await uow.ingest_uploads.upsert(descriptor)
            # Automatically commits on successful exit
            # Automatically rolls back on exception
    """

    def __init__(
        self,
        session: AsyncSession,
        processing_lease_seconds: int = DEFAULT_PROCESSING_LEASE_SECONDS,
    ):
        """Initialize UnitOfWork with database session.

        Args:
            session: SQLAlchemy async session for database operations
            processing_lease_seconds: Claim lease passed to the repository
        """
        self.session = session
        self.ingest_uploads = IngestUploadRepository(
            session, processing_lease_seconds=processing_lease_seconds
        )

    async def __aenter__(self):
        """Enter async context manager.

        Returns:
            self: UnitOfWork instance with repositories available
        """
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager with automatic commit/rollback.

        Returns:
            False: Always re-raise exceptions after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.info("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


def create_uow_factory(
    session_factory: async_sessionmaker[AsyncSession],
    processing_lease_seconds: int = DEFAULT_PROCESSING_LEASE_SECONDS,
):
    """Create a factory function that produces UnitOfWork instances.

    Args:
        session_factory: SQLAlchemy async session factory
        processing_lease_seconds: Claim lease passed to every repository

    Returns:
        Callable that creates UnitOfWork instances from new sessions

    Example:
        session_factory = setup_db_session(db_url)
        uow_factory = create_uow_factory(session_factory)

        async with await uow_factory() as uow:
            await uow.ingest_uploads.upsert(descriptor)
    """

    async def _create_uow():
        """Create a new UnitOfWork instance with a new session."""
        session = session_factory()
        return UnitOfWork(session, processing_lease_seconds=processing_lease_seconds)

    return _create_uow
