"""pytest fixtures for the ingestion pipeline tests.

Provides:
- utc_timezone: Autouse fixture enforcing UTC timezone
- settings: Test settings (validation skipped via APP_ENV=test)
- session_factory: Function-scoped factory bound to a fresh file-backed SQLite
  database (separate connections per session, so concurrent claims really race)
- session: Function-scoped database session
- uow_factory: Function-scoped UnitOfWork factory
- make_descriptor: Builder for producer descriptors
- fake_source / fake_storage: In-memory Alist and object storage collaborators
"""

import asyncio
import os
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from alcms_ingest import models  # noqa: F401  (registers tables)
from alcms_ingest.core.config import Settings
from alcms_ingest.core.timezone import utcnow
from alcms_ingest.models.ingest_upload import IngestUploadDescriptor, UploadCredentials
from alcms_ingest.services.exceptions import StorageRejectionError, TransientSourceError
from alcms_ingest.uow import create_uow_factory


@pytest.fixture(scope="session", autouse=True)
def utc_timezone():
    """Enforce UTC timezone for all tests."""
    os.environ["TZ"] = "UTC"
    yield


@pytest.fixture
def settings() -> Settings:
    """Settings for tests; small defaults, no polling delay."""
    return Settings(  # type: ignore[call-arg]
        APP_ENV="test",
        DATABASE_URL="sqlite+aiosqlite:///:memory:",
        ALIST_UPLOAD_BATCH_SIZE=20,
        ALIST_UPLOAD_CONCURRENCY=4,
        POLL_INTERVAL_SECONDS=0,
        PROCESSING_LEASE_SECONDS=1800,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path) -> AsyncGenerator[async_sessionmaker[AsyncSession], None]:
    """Provide a session factory over an empty, migrated SQLite database."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ingest.db'}",
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    yield factory

    await engine.dispose()


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Provide a function-scoped database session."""
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture
async def uow_factory(session_factory):
    """Provide a function-scoped UnitOfWork factory."""
    return create_uow_factory(session_factory)


@pytest.fixture
def make_descriptor():
    """Return a builder for IngestUploadDescriptor with sensible defaults."""

    def _make(**overrides) -> IngestUploadDescriptor:
        file_name = overrides.pop("file_name", "cover.jpg")
        folder_path = overrides.pop("folder_path", "/library/album-1")
        data = {
            "setting_id": 1,
            "resource_id": 42,
            "folder_path": folder_path,
            "file_name": file_name,
            "alist_file_path": f"{folder_path}/{file_name}",
            "file_size": 1024,
            "file_modified_at": datetime(2024, 5, 1, 8, 30, 0),
            "bucket": "alcms-images",
            "object_name": f"1714552200000_abc123.{file_name.rsplit('.', 1)[-1]}",
            "file_url": "http://minio.local:9000/alcms-images/1714552200000_abc123.jpg",
            "upload_url": "https://minio.local/presigned/initial",
            "upload_method": "PUT",
            "content_type": "image/jpeg",
            "upload_headers": None,
            "expires_at": utcnow() + timedelta(hours=1),
        }
        data.update(overrides)
        return IngestUploadDescriptor(**data)

    return _make


class FakeSource:
    """In-memory Alist stand-in recording concurrent downloads."""

    def __init__(self, delay: float = 0.0):
        self.files: dict[str, bytes] = {}
        self.errors: dict[str, Exception] = {}
        self.calls: list[str] = []
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0

    async def get_file_content(self, path: str) -> bytes:
        self.calls.append(path)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if path in self.errors:
                raise self.errors[path]
            if path not in self.files:
                raise TransientSourceError(f"alist fs/get {path}: object not found")
            return self.files[path]
        finally:
            self.in_flight -= 1


class FakeStorage:
    """In-memory object storage stand-in recording presigns and uploads."""

    def __init__(self, delay: float = 0.0):
        self.delay = delay
        self.presigned: list[tuple[str, str, int]] = []
        self.uploads: list[dict] = []
        self.reject_status: Optional[int] = None
        self.in_flight = 0
        self.max_in_flight = 0

    def get_file_url(self, bucket: str, object_name: str) -> str:
        return f"http://minio.local:9000/{bucket}/{object_name}"

    async def presign_put(
        self, bucket: str, object_name: str, ttl_seconds: int
    ) -> UploadCredentials:
        self.presigned.append((bucket, object_name, ttl_seconds))
        return UploadCredentials(
            upload_url=f"https://minio.local/presigned/{object_name}?n={len(self.presigned)}",
            expires_at=utcnow() + timedelta(seconds=ttl_seconds),
        )

    async def put_object(
        self,
        upload_url: str,
        data: bytes,
        headers: Optional[dict] = None,
        method: str = "PUT",
    ) -> None:
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.reject_status is not None:
                raise StorageRejectionError(
                    f"Upload rejected ({self.reject_status}): AccessDenied",
                    status_code=self.reject_status,
                )
            self.uploads.append(
                {"url": upload_url, "data": data, "headers": headers or {}, "method": method}
            )
        finally:
            self.in_flight -= 1


@pytest.fixture
def fake_source() -> FakeSource:
    return FakeSource()


@pytest.fixture
def fake_storage() -> FakeStorage:
    return FakeStorage()


@pytest.fixture
def slow_storage() -> FakeStorage:
    """Storage whose uploads take long enough to overlap."""
    return FakeStorage(delay=0.02)
