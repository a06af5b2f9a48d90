"""Object store backends.

A backend performs raw list/get/put/delete calls and raises StorageError on
failure. ``get`` returns None for a missing key. Namespacing by prefix is the
caller's convention; backends treat keys as opaque strings.
"""

import asyncio
import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, Protocol
from urllib.parse import quote

import boto3
import structlog
from botocore.exceptions import BotoCoreError, ClientError

from imagestudio.core.config import Settings
from imagestudio.services.exceptions import StorageError

logger = structlog.get_logger(__name__)

_MISSING_KEY_CODES = {"NoSuchKey", "404", "NotFound"}


def _header_safe(metadata: dict[str, str]) -> dict[str, str]:
    """S3 metadata travels as HTTP headers, so non-ASCII values are percent-encoded."""
    return {k: v if v.isascii() else quote(v, safe="") for k, v in metadata.items()}


@dataclass(frozen=True)
class BlobObject:
    """Stored bytes plus HTTP and custom metadata."""

    key: str
    data: bytes
    content_type: str = "application/octet-stream"
    custom_metadata: dict[str, str] = field(default_factory=dict)
    uploaded_at: Optional[datetime] = None
    etag: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.data)

    def text(self, encoding: str = "utf-8") -> str:
        return self.data.decode(encoding, errors="replace")


@dataclass(frozen=True)
class BlobListing:
    """One entry of a list call (no payload)."""

    key: str
    size: int
    uploaded_at: Optional[datetime] = None
    etag: Optional[str] = None
    custom_metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class BlobPage:
    objects: list[BlobListing]
    truncated: bool = False


class BlobBackend(Protocol):
    async def list(self, prefix: str | None = None, limit: int = 1000) -> BlobPage: ...

    async def get(self, key: str) -> BlobObject | None: ...

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        custom_metadata: dict[str, str] | None = None,
    ) -> BlobObject: ...

    async def delete(self, key: str) -> None: ...


class MemoryBlobBackend:
    """In-process object store used for development and tests.

    Individual calls are atomic with respect to each other because they never
    suspend between reading and writing the underlying dict.
    """

    def __init__(self) -> None:
        self._objects: dict[str, BlobObject] = {}

    def __len__(self) -> int:
        return len(self._objects)

    def __contains__(self, key: object) -> bool:
        return key in self._objects

    async def list(self, prefix: str | None = None, limit: int = 1000) -> BlobPage:
        keys = sorted(k for k in self._objects if not prefix or k.startswith(prefix))
        listings = [
            BlobListing(
                key=k,
                size=self._objects[k].size,
                uploaded_at=self._objects[k].uploaded_at,
                etag=self._objects[k].etag,
                custom_metadata=dict(self._objects[k].custom_metadata),
            )
            for k in keys[:limit]
        ]
        return BlobPage(objects=listings, truncated=len(keys) > limit)

    async def get(self, key: str) -> BlobObject | None:
        return self._objects.get(key)

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        custom_metadata: dict[str, str] | None = None,
    ) -> BlobObject:
        obj = BlobObject(
            key=key,
            data=bytes(data),
            content_type=content_type,
            custom_metadata=dict(custom_metadata or {}),
            uploaded_at=datetime.now(timezone.utc),
            etag=hashlib.md5(data).hexdigest(),
        )
        self._objects[key] = obj
        return obj

    async def delete(self, key: str) -> None:
        self._objects.pop(key, None)


class S3BlobBackend:
    """S3-compatible object store (AWS S3, Cloudflare R2) via boto3.

    boto3 is synchronous, so every call runs in a worker thread.
    """

    def __init__(self, client: Any, bucket: str):
        """Initialize S3 backend.

        Args:
            client: boto3 S3 client (``boto3.client("s3", ...)``)
            bucket: Bucket name
        """
        self.client = client
        self.bucket = bucket

    @classmethod
    def from_credentials(
        cls,
        bucket: str,
        endpoint_url: str,
        access_key_id: str,
        secret_access_key: str,
        region: str = "auto",
    ) -> "S3BlobBackend":
        client = boto3.client(
            "s3",
            endpoint_url=endpoint_url or None,
            aws_access_key_id=access_key_id or None,
            aws_secret_access_key=secret_access_key or None,
            region_name=region,
        )
        return cls(client, bucket)

    async def list(self, prefix: str | None = None, limit: int = 1000) -> BlobPage:
        kwargs: dict[str, Any] = {"Bucket": self.bucket, "MaxKeys": limit}
        if prefix:
            kwargs["Prefix"] = prefix
        response = await self._call("list_objects_v2", **kwargs)
        listings = [
            BlobListing(
                key=item["Key"],
                size=int(item.get("Size", 0)),
                uploaded_at=item.get("LastModified"),
                etag=(item.get("ETag") or "").strip('"') or None,
            )
            for item in response.get("Contents", [])
        ]
        return BlobPage(objects=listings, truncated=bool(response.get("IsTruncated", False)))

    async def get(self, key: str) -> BlobObject | None:
        try:
            response = await asyncio.to_thread(
                self.client.get_object, Bucket=self.bucket, Key=key
            )
            data = await asyncio.to_thread(response["Body"].read)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in _MISSING_KEY_CODES:
                return None
            raise StorageError(f"Failed to get {key}: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"Failed to get {key}: {e}") from e

        return BlobObject(
            key=key,
            data=data,
            content_type=response.get("ContentType") or "application/octet-stream",
            custom_metadata=dict(response.get("Metadata") or {}),
            uploaded_at=response.get("LastModified"),
            etag=(response.get("ETag") or "").strip('"') or None,
        )

    async def put(
        self,
        key: str,
        data: bytes,
        content_type: str,
        custom_metadata: dict[str, str] | None = None,
    ) -> BlobObject:
        response = await self._call(
            "put_object",
            Bucket=self.bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
            Metadata=_header_safe(custom_metadata or {}),
        )
        return BlobObject(
            key=key,
            data=data,
            content_type=content_type,
            custom_metadata=dict(custom_metadata or {}),
            uploaded_at=datetime.now(timezone.utc),
            etag=(response.get("ETag") or "").strip('"') or None,
        )

    async def delete(self, key: str) -> None:
        await self._call("delete_object", Bucket=self.bucket, Key=key)

    async def _call(self, operation: str, **kwargs: Any) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(getattr(self.client, operation), **kwargs)
        except (ClientError, BotoCoreError) as e:
            logger.warning("blob.s3_call_failed", operation=operation, error=str(e))
            raise StorageError(f"{operation} failed: {e}") from e


def create_blob_backends(settings: Settings) -> tuple[BlobBackend, BlobBackend]:
    """Create the image store and analytics export store backends from settings."""
    if settings.blob_backend != "s3":
        return MemoryBlobBackend(), MemoryBlobBackend()

    def s3(bucket: str) -> S3BlobBackend:
        return S3BlobBackend.from_credentials(
            bucket=bucket,
            endpoint_url=settings.s3_endpoint_url,
            access_key_id=settings.s3_access_key_id,
            secret_access_key=settings.s3_secret_access_key,
            region=settings.s3_region,
        )

    images = s3(settings.s3_bucket)
    if not settings.s3_analytics_bucket:
        logger.warning("storage.analytics_bucket_missing", fallback="memory")
        return images, MemoryBlobBackend()
    return images, s3(settings.s3_analytics_bucket)
