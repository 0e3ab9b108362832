"""Durable storage for generated videos (S3 / R2 compatible)."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
import io
import logging
import tempfile
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
import httpx

from config import Settings, settings as default_settings
from services.errors import StorageMigrationError

logger = logging.getLogger(__name__)

SPOOL_MAX_BYTES = 32 * 1024 * 1024
CACHE_CONTROL = "public, max-age=31536000"


@dataclass(frozen=True)
class StoredObject:
    url: str
    key: str


def video_object_key(video_uuid: str) -> str:
    return f"videos/{video_uuid}/output.mp4"


def upload_object_key(user_id: str, upload_id: str, extension: str) -> str:
    return f"uploads/{user_id}/{upload_id}.{extension}"


class StorageMigrator:
    """Copies a provider-hosted asset into our bucket.

    Keys are deterministic per video, so a retried migration overwrites the
    same object instead of leaving orphans behind.
    """

    def __init__(
        self,
        *,
        endpoint: str,
        bucket: str,
        access_key: str,
        secret_key: str,
        region: str = "auto",
        public_url: str = "",
        download_timeout_seconds: float = 300.0,
        max_attempts: int = 3,
        retry_base_seconds: float = 2.0,
        s3_client: Any = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.endpoint = (endpoint or "").rstrip("/")
        self.bucket = bucket
        self.access_key = access_key
        self.secret_key = secret_key
        self.region = region or "auto"
        self.public_base_url = (public_url or "").rstrip("/")
        self.download_timeout_seconds = download_timeout_seconds
        self.max_attempts = max(int(max_attempts), 1)
        self.retry_base_seconds = max(float(retry_base_seconds), 0.0)
        self._s3_client = s3_client
        self._http_client = http_client
        self._sleep = sleep

    @classmethod
    def from_settings(cls, config: Optional[Settings] = None, **overrides: Any) -> "StorageMigrator":
        config = config or default_settings
        options = dict(
            endpoint=config.STORAGE_ENDPOINT,
            bucket=config.STORAGE_BUCKET,
            access_key=config.STORAGE_ACCESS_KEY,
            secret_key=config.STORAGE_SECRET_KEY,
            region=config.STORAGE_REGION,
            public_url=config.STORAGE_PUBLIC_URL,
            download_timeout_seconds=config.STORAGE_DOWNLOAD_TIMEOUT_SECONDS,
            max_attempts=config.STORAGE_MAX_ATTEMPTS,
            retry_base_seconds=config.STORAGE_RETRY_BASE_SECONDS,
        )
        options.update(overrides)
        return cls(**options)

    @property
    def is_configured(self) -> bool:
        if self._s3_client is not None:
            return bool(self.bucket)
        return all([self.endpoint, self.bucket, self.access_key, self.secret_key])

    def public_url(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url}/{key}"
        return f"{self.endpoint}/{self.bucket}/{key}"

    def _s3(self) -> Any:
        if self._s3_client is None:
            self._s3_client = boto3.client(
                "s3",
                endpoint_url=self.endpoint,
                region_name=self.region,
                aws_access_key_id=self.access_key,
                aws_secret_access_key=self.secret_key,
                config=Config(
                    signature_version="s3v4",
                    retries={"max_attempts": 3, "mode": "standard"},
                ),
            )
        return self._s3_client

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.download_timeout_seconds) as client:
            yield client

    async def download_and_upload(
        self,
        source_url: str,
        key: str,
        content_type: Optional[str] = None,
    ) -> StoredObject:
        if not source_url:
            raise StorageMigrationError("Missing source URL for storage migration")
        return await self._store(key, source_url, lambda: self._copy_once(source_url, key, content_type))

    async def upload_bytes(self, data: bytes, key: str, content_type: str) -> StoredObject:
        """Store an in-memory payload, such as a user-uploaded image."""
        return await self._store(
            key,
            "upload",
            lambda: asyncio.to_thread(self._upload, io.BytesIO(data), key, content_type),
        )

    async def _store(
        self,
        key: str,
        source: str,
        attempt_once: Callable[[], Awaitable[None]],
    ) -> StoredObject:
        if not self.is_configured:
            raise StorageMigrationError(
                "Storage is not configured. Required: STORAGE_ENDPOINT, STORAGE_ACCESS_KEY, "
                "STORAGE_SECRET_KEY, STORAGE_BUCKET"
            )
        last_error: Optional[BaseException] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                await attempt_once()
                stored = StoredObject(url=self.public_url(key), key=key)
                logger.info("Stored %s as %s (attempt %s)", source, key, attempt)
                return stored
            except (httpx.HTTPError, BotoCoreError, ClientError, OSError) as exc:
                last_error = exc
                logger.warning(
                    "Storage migration attempt %s/%s for %s failed: %s",
                    attempt,
                    self.max_attempts,
                    key,
                    exc,
                )
                if attempt < self.max_attempts:
                    await self._sleep(self.retry_base_seconds * (2 ** (attempt - 1)))

        raise StorageMigrationError(
            f"Storage migration for {key} failed after {self.max_attempts} attempts: {last_error}"
        ) from last_error

    async def _copy_once(self, source_url: str, key: str, content_type: Optional[str]) -> None:
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_BYTES) as buffer:
            async with self._http() as client:
                async with client.stream("GET", source_url, follow_redirects=True) as response:
                    response.raise_for_status()
                    detected = response.headers.get("content-type")
                    async for chunk in response.aiter_bytes():
                        buffer.write(chunk)
            buffer.seek(0)
            resolved_type = content_type or detected or "video/mp4"
            await asyncio.to_thread(self._upload, buffer, key, resolved_type)

    def _upload(self, fileobj: Any, key: str, content_type: str) -> None:
        self._s3().upload_fileobj(
            fileobj,
            self.bucket,
            key,
            ExtraArgs={"ContentType": content_type, "CacheControl": CACHE_CONTROL},
        )
