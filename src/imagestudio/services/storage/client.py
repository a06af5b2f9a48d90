"""Typed object store client returning success/error envelopes.

Every call reports ``success``, ``error`` and ``duration_ms`` instead of
raising, so callers can scope a storage failure to the one file or slot that
triggered it.
"""

import time
from datetime import datetime
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from imagestudio.services.exceptions import ErrorKind, StorageError
from imagestudio.services.storage.backends import BlobBackend, BlobObject

logger = structlog.get_logger(__name__)


class ObjectInfo(BaseModel):
    key: str
    size: int
    uploaded_at: Optional[datetime] = None
    etag: Optional[str] = None
    custom_metadata: dict[str, str] = Field(default_factory=dict)


class ListObjectsResult(BaseModel):
    success: bool
    objects: list[ObjectInfo] = Field(default_factory=list)
    truncated: bool = False
    count: int = 0
    error: Optional[str] = None
    duration_ms: int = 0


class GetObjectResult(BaseModel):
    success: bool
    key: str
    data: Optional[bytes] = None
    size: int = 0
    content_type: Optional[str] = None
    custom_metadata: dict[str, str] = Field(default_factory=dict)
    etag: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    duration_ms: int = 0

    def text(self, encoding: str = "utf-8") -> str:
        return (self.data or b"").decode(encoding, errors="replace")


class PutObjectResult(BaseModel):
    success: bool
    key: str
    size: int = 0
    content_type: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0


class DeleteObjectResult(BaseModel):
    success: bool
    key: str
    error: Optional[str] = None
    duration_ms: int = 0


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


class BlobStoreClient:
    """Envelope-returning wrapper over a BlobBackend."""

    MAX_LIST_LIMIT = 1000

    def __init__(self, backend: BlobBackend):
        self.backend = backend

    async def list_objects(self, prefix: str | None = None, limit: int = 50) -> ListObjectsResult:
        """List objects under a prefix.

        Args:
            prefix: Key prefix filter (e.g. "generations/")
            limit: Maximum number of objects returned (1..1000)
        """
        start = time.monotonic()
        if not 1 <= limit <= self.MAX_LIST_LIMIT:
            return ListObjectsResult(
                success=False,
                error=f"limit must be between 1 and {self.MAX_LIST_LIMIT} (got {limit})",
                duration_ms=_elapsed_ms(start),
            )
        try:
            page = await self.backend.list(prefix=prefix, limit=limit)
        except StorageError as e:
            logger.error("blob.list_failed", prefix=prefix, error=str(e))
            return ListObjectsResult(success=False, error=str(e), duration_ms=_elapsed_ms(start))

        objects = [
            ObjectInfo(
                key=item.key,
                size=item.size,
                uploaded_at=item.uploaded_at,
                etag=item.etag,
                custom_metadata=item.custom_metadata,
            )
            for item in page.objects
        ]
        return ListObjectsResult(
            success=True,
            objects=objects,
            truncated=page.truncated,
            count=len(objects),
            duration_ms=_elapsed_ms(start),
        )

    async def get_object(self, key: str) -> GetObjectResult:
        """Fetch an object's bytes and metadata."""
        start = time.monotonic()
        try:
            obj: BlobObject | None = await self.backend.get(key)
        except StorageError as e:
            logger.error("blob.get_failed", key=key, error=str(e))
            return GetObjectResult(
                success=False,
                key=key,
                error=str(e),
                error_kind=ErrorKind.STORAGE_FAILED,
                duration_ms=_elapsed_ms(start),
            )

        if obj is None:
            return GetObjectResult(
                success=False,
                key=key,
                error="Object not found",
                error_kind=ErrorKind.NOT_FOUND,
                duration_ms=_elapsed_ms(start),
            )

        return GetObjectResult(
            success=True,
            key=key,
            data=obj.data,
            size=obj.size,
            content_type=obj.content_type,
            custom_metadata=obj.custom_metadata,
            etag=obj.etag,
            duration_ms=_elapsed_ms(start),
        )

    async def get_text(self, key: str, encoding: str = "utf-8") -> str | None:
        """Return an object's content decoded as text, or None if it cannot be read."""
        fetched = await self.get_object(key)
        if not fetched.success:
            return None
        return fetched.text(encoding)

    async def put_object(
        self,
        key: str,
        data: bytes,
        content_type: str = "application/octet-stream",
        custom_metadata: dict[str, str] | None = None,
    ) -> PutObjectResult:
        """Store bytes under a key with content type and custom metadata."""
        start = time.monotonic()
        if not key:
            return PutObjectResult(success=False, key=key, error="Key is required")
        try:
            await self.backend.put(key, data, content_type, custom_metadata)
        except StorageError as e:
            logger.error("blob.put_failed", key=key, error=str(e))
            return PutObjectResult(
                success=False, key=key, error=str(e), duration_ms=_elapsed_ms(start)
            )

        duration_ms = _elapsed_ms(start)
        logger.debug("blob.put", key=key, size=len(data), duration_ms=duration_ms)
        return PutObjectResult(
            success=True,
            key=key,
            size=len(data),
            content_type=content_type,
            duration_ms=duration_ms,
        )

    async def put_text(
        self,
        key: str,
        content: str,
        content_type: str = "text/plain",
        custom_metadata: dict[str, str] | None = None,
    ) -> PutObjectResult:
        return await self.put_object(key, content.encode("utf-8"), content_type, custom_metadata)

    async def delete_object(self, key: str) -> DeleteObjectResult:
        """Delete an object. Deleting a missing key succeeds."""
        start = time.monotonic()
        try:
            await self.backend.delete(key)
        except StorageError as e:
            logger.error("blob.delete_failed", key=key, error=str(e))
            return DeleteObjectResult(
                success=False, key=key, error=str(e), duration_ms=_elapsed_ms(start)
            )
        return DeleteObjectResult(success=True, key=key, duration_ms=_elapsed_ms(start))
