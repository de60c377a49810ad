"""Application configuration using Pydantic BaseSettings."""

import logging

import structlog
from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file="../.env", env_file_encoding="utf-8", extra="ignore")

    # Task store
    database_url: str = Field(
        default="sqlite+aiosqlite:///./alcms_ingest.db", alias="DATABASE_URL"
    )
    db_pool_size: int = Field(default=20, alias="DB_POOL_SIZE")

    # Application Environment
    app_env: str = Field(default="development", alias="APP_ENV")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Alist (external source)
    alist_base_url: str = Field(default="", alias="ALIST_BASE_URL")
    alist_username: str = Field(default="", alias="ALIST_USERNAME")
    alist_password: str = Field(default="", alias="ALIST_PASSWORD")
    alist_token_expires_hours: int = Field(default=48, alias="ALIST_TOKEN_EXPIRES_HOURS")
    alist_request_timeout_seconds: float = Field(
        default=10.0, alias="ALIST_REQUEST_TIMEOUT_SECONDS"
    )

    # MinIO (object storage)
    minio_endpoint: str = Field(default="localhost", alias="MINIO_ENDPOINT")
    minio_port: int = Field(default=9000, alias="MINIO_PORT")
    minio_use_ssl: bool = Field(default=False, alias="MINIO_USE_SSL")
    minio_access_key: str = Field(default="", alias="MINIO_ACCESS_KEY")
    minio_secret_key: str = Field(default="", alias="MINIO_SECRET_KEY")
    minio_region: str = Field(default="us-east-1", alias="MINIO_REGION")
    minio_bucket_images: str = Field(default="alcms-images", alias="MINIO_BUCKET_IMAGES")

    # Upload worker
    alist_upload_batch_size: int = Field(default=20, alias="ALIST_UPLOAD_BATCH_SIZE")
    alist_upload_concurrency: int = Field(default=4, alias="ALIST_UPLOAD_CONCURRENCY")
    poll_interval_seconds: int = Field(default=30, alias="POLL_INTERVAL_SECONDS")
    processing_lease_seconds: int = Field(default=1800, alias="PROCESSING_LEASE_SECONDS")
    upload_timeout_seconds: float = Field(default=120.0, alias="UPLOAD_TIMEOUT_SECONDS")

    @property
    def minio_public_base_url(self) -> str:
        """Base URL used to build public file URLs for uploaded objects."""
        protocol = "https" if self.minio_use_ssl else "http"
        port = "" if self.minio_port in (80, 443) else f":{self.minio_port}"
        return f"{protocol}://{self.minio_endpoint}{port}"

    @model_validator(mode="after")
    def validate_required_config(self) -> "Settings":
        """Validate required configuration on startup.

        Fails fast with clear error messages if the Alist or MinIO credentials
        are missing. Validation is skipped in test environments.
        """
        if self.app_env in ("test", "testing"):
            return self

        missing = []

        if not self.alist_base_url:
            missing.append("ALIST_BASE_URL: Base URL of the Alist server (e.g. https://alist.example.com)")
        if not self.alist_username or not self.alist_password:
            missing.append("ALIST_USERNAME / ALIST_PASSWORD: Alist account used to read source files")
        if not self.minio_access_key or not self.minio_secret_key:
            missing.append("MINIO_ACCESS_KEY / MINIO_SECRET_KEY: Credentials used to presign uploads")

        if missing:
            error_msg = "CRITICAL: Missing required environment variables:\n\n" + "\n".join(
                f"  - {m}" for m in missing
            )
            error_msg += "\n\nThe ingestion worker cannot start without these variables."
            error_msg += "\nPlease update your .env file and restart."
            raise ValueError(error_msg)

        return self


def configure_logging(settings: Settings) -> None:
    """Configure structlog based on application environment.

    - Production: JSON output for log aggregation
    - Development: Console output for human readability
    """
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    if settings.app_env == "production":
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
