"""Alist API client for reading source file metadata and content."""

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional

import httpx
import structlog

from alcms_ingest.core.config import Settings
from alcms_ingest.core.timezone import to_naive_utc, utcnow
from alcms_ingest.services.exceptions import (
    SourceAuthError,
    SourceFileError,
    TransientSourceError,
)

logger = structlog.get_logger(__name__)

# Go's RFC3339Nano may carry up to 9 fractional digits; datetime accepts 6
_FRACTION_RE = re.compile(r"(\.\d{6})\d+")


def parse_alist_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse an Alist 'modified' timestamp into naive UTC.

    Args:
        value: RFC3339 timestamp (e.g. "2024-05-01T08:30:00.123456789+08:00")

    Returns:
        Naive UTC datetime, or None for empty values and Go's zero time
    """
    if not value or value.startswith("0001-01-01"):
        return None
    normalized = _FRACTION_RE.sub(r"\1", value.replace("Z", "+00:00"))
    return to_naive_utc(datetime.fromisoformat(normalized))


@dataclass
class FileMetadata:
    """Source metadata snapshot used for change detection."""

    size: int
    modified_at: Optional[datetime]


@dataclass
class AlistFileInfo:
    """Subset of /api/fs/get response used by the pipeline."""

    name: str
    size: int
    is_dir: bool
    modified_at: Optional[datetime]
    raw_url: Optional[str]
    sign: Optional[str] = None
    provider: Optional[str] = None


class AlistClient:
    """Async client for the Alist public API.

    Logs in lazily with username/password and caches the token until it
    expires. An envelope answering 401 invalidates the token and the request
    is retried once after a fresh login.
    """

    def __init__(
        self,
        base_url: str,
        username: str,
        password: str,
        token_expires_hours: int = 48,
        timeout: float = 10.0,
        download_timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Alist client.

        Args:
            base_url: Alist server URL (e.g. https://alist.example.com)
            username: Alist account name
            password: Alist account password
            token_expires_hours: Lifetime assumed for a login token (default: 48)
            timeout: Timeout for API calls in seconds
            download_timeout: Timeout for raw file downloads in seconds
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.username = username
        self.password = password
        self.token_expires_hours = token_expires_hours
        self.download_timeout = download_timeout
        self._token: Optional[str] = None
        self._token_expires_at: Optional[datetime] = None
        # Concurrent tasks share one login instead of each logging in
        self._login_lock = asyncio.Lock()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers={"Content-Type": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlistClient":
        """Build a client from application settings."""
        return cls(
            base_url=settings.alist_base_url,
            username=settings.alist_username,
            password=settings.alist_password,
            token_expires_hours=settings.alist_token_expires_hours,
            timeout=settings.alist_request_timeout_seconds,
            download_timeout=settings.upload_timeout_seconds,
        )

    async def __aenter__(self) -> "AlistClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._client.aclose()

    @staticmethod
    def _raise_for_status(response: httpx.Response, context: str) -> None:
        """Classify HTTP-level failures into source errors."""
        if response.status_code == 429 or response.status_code >= 500:
            raise TransientSourceError(
                f"{context}: service unavailable ({response.status_code}): {response.text[:200]}"
            )
        if response.status_code in (401, 403):
            raise SourceAuthError(f"{context}: access denied ({response.status_code})")
        if response.status_code == 404:
            raise SourceFileError(f"{context}: not found")
        if response.status_code >= 400:
            raise SourceFileError(
                f"{context}: bad request ({response.status_code}): {response.text[:200]}"
            )

    async def _send(self, method: str, url: str, context: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientSourceError(f"{context}: request timeout: {e}") from e
        except httpx.HTTPError as e:
            raise TransientSourceError(f"{context}: network error: {e}") from e
        self._raise_for_status(response, context)
        return response

    async def login(self) -> str:
        """Obtain a new token via /api/auth/login.

        Returns:
            Token string (sent verbatim in the Authorization header)

        Raises:
            SourceAuthError: Credentials rejected
            TransientSourceError: Alist unreachable
        """
        response = await self._send(
            "POST",
            "/api/auth/login",
            "alist login",
            json={"username": self.username, "password": self.password},
        )
        body = response.json()
        if body.get("code") != 200:
            raise SourceAuthError(f"alist login failed: {body.get('message')}")

        self._token = body["data"]["token"]
        self._token_expires_at = utcnow() + timedelta(hours=self.token_expires_hours)
        logger.info(
            "alist.login.succeeded",
            username=self.username,
            expires_at=self._token_expires_at.isoformat(),
        )
        return self._token

    def _token_valid(self) -> bool:
        return (
            self._token is not None
            and self._token_expires_at is not None
            and utcnow() < self._token_expires_at
        )

    async def ensure_token(self) -> str:
        """Return a cached token, logging in again once it has expired."""
        if self._token_valid():
            return self._token  # type: ignore[return-value]
        async with self._login_lock:
            # Another task may have logged in while we waited
            if self._token_valid():
                return self._token  # type: ignore[return-value]
            return await self.login()

    async def _api_post(self, path: str, payload: dict, context: str) -> Any:
        """POST to an authenticated API endpoint and unwrap the response envelope."""
        for attempt in (1, 2):
            token = await self.ensure_token()
            response = await self._send(
                "POST", path, context, json=payload, headers={"Authorization": token}
            )
            body = response.json()
            code = body.get("code")
            if code == 200:
                return body.get("data")

            message = body.get("message") or ""
            if code == 401 and attempt == 1:
                # Token revoked server-side; log in again and retry once
                self._token = None
                continue
            if code in (401, 403):
                raise SourceAuthError(f"{context}: {message}")
            if "not found" in message.lower():
                raise SourceFileError(f"{context}: {message}")
            raise TransientSourceError(f"{context}: code={code} {message}")

        raise SourceAuthError(f"{context}: token rejected after re-login")

    async def get_file_info(self, path: str) -> AlistFileInfo:
        """Fetch file details via /api/fs/get.

        Args:
            path: Absolute Alist path of the file

        Returns:
            File details including the raw download URL
        """
        data = await self._api_post(
            "/api/fs/get", {"path": path, "password": ""}, f"alist fs/get {path}"
        )
        return AlistFileInfo(
            name=data.get("name", ""),
            size=int(data.get("size") or 0),
            is_dir=bool(data.get("is_dir")),
            modified_at=parse_alist_timestamp(data.get("modified")),
            raw_url=data.get("raw_url") or None,
            sign=data.get("sign") or None,
            provider=data.get("provider"),
        )

    async def get_file_metadata(self, path: str) -> FileMetadata:
        """Return the size/modified snapshot used for change detection."""
        info = await self.get_file_info(path)
        return FileMetadata(size=info.size, modified_at=info.modified_at)

    async def get_file_content(self, path: str) -> bytes:
        """Download the full content of a file.

        Args:
            path: Absolute Alist path of the file

        Returns:
            File bytes

        Raises:
            SourceFileError: File has no raw URL or was not found
            TransientSourceError: Network failure or 5xx from the storage backend
        """
        info = await self.get_file_info(path)
        if info.is_dir:
            raise SourceFileError(f"alist path is a directory: {path}")
        if not info.raw_url:
            raise SourceFileError(f"alist file has no raw_url: {path}")

        response = await self._send(
            "GET",
            info.raw_url,
            f"alist download {path}",
            timeout=self.download_timeout,
            follow_redirects=True,
        )
        return response.content
