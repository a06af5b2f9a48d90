"""Signed-view resolver: turns a storage key into a display-ready URL.

Images are returned as embedded ``data:`` URLs; images above the preview
limit are rejected with a distinct ``too_large`` error; other objects are
returned as text content. Results are cached per key for a bounded time and
concurrent requests for one key share a single fetch. Expired entries are
swept whenever a new entry is written.
"""

import asyncio
import base64
import re
import time
from typing import Callable, Optional

import structlog
from pydantic import BaseModel

from imagestudio.services.exceptions import ErrorKind, InvalidInputError
from imagestudio.services.files import format_megabytes
from imagestudio.services.storage.client import BlobStoreClient

logger = structlog.get_logger(__name__)

MIN_EXPIRES_IN = 60
MAX_EXPIRES_IN = 3600

_IMAGE_KEY_RE = re.compile(r"\.(jpg|jpeg|png|gif|webp)$", re.IGNORECASE)

# Results worth keeping: a successful view, or a size rejection that will not change
_CACHEABLE_ERRORS = (ErrorKind.TOO_LARGE,)


class ViewResult(BaseModel):
    success: bool
    key: str
    url: Optional[str] = None
    content: Optional[str] = None
    size: int = 0
    content_type: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    duration_ms: int = 0


def is_image_key(key: str) -> bool:
    return bool(_IMAGE_KEY_RE.search(key))


class SignedViewResolver:
    """Resolve storage keys to viewable URLs with a time-boxed cache."""

    def __init__(
        self,
        client: BlobStoreClient,
        max_preview_bytes: int = 5 * 1024 * 1024,
        cache_ttl_seconds: float = 30 * 60,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.max_preview_bytes = max_preview_bytes
        self.cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._cache: dict[str, tuple[float, ViewResult]] = {}
        self._inflight: dict[str, asyncio.Task[ViewResult]] = {}

    async def resolve(self, key: str, expires_in: int = MAX_EXPIRES_IN) -> ViewResult:
        """Return a display-ready view of the object stored under ``key``.

        Args:
            key: Storage key
            expires_in: Requested URL lifetime in seconds (60..3600). Embedded
                data URLs do not expire; the value is validated for API parity.

        Raises:
            InvalidInputError: If key is empty or expires_in is out of range
        """
        if not key:
            raise InvalidInputError("Storage key is required")
        if not MIN_EXPIRES_IN <= expires_in <= MAX_EXPIRES_IN:
            raise InvalidInputError(
                f"expires_in must be between {MIN_EXPIRES_IN} and {MAX_EXPIRES_IN} seconds"
            )

        cached = self.peek(key)
        if cached is not None:
            logger.debug("view.cache_hit", key=key)
            return cached

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._fetch(key))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    def peek(self, key: str) -> ViewResult | None:
        """Return a cached, unexpired result without fetching."""
        entry = self._cache.get(key)
        if entry is None:
            return None
        expires_at, result = entry
        if self._clock() >= expires_at:
            del self._cache[key]
            return None
        return result

    def prefetch(self, key: str) -> None:
        """Start resolving ``key`` in the background if it is not cached or in flight."""
        if self.peek(key) is not None or key in self._inflight:
            return
        task = asyncio.create_task(self._fetch(key))
        self._inflight[key] = task
        task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        task.add_done_callback(lambda t, k=key: self._log_prefetch_failure(k, t))

    def is_pending(self, key: str) -> bool:
        return key in self._inflight

    def invalidate(self, key: str) -> None:
        self._cache.pop(key, None)

    def clear(self) -> None:
        self._cache.clear()

    def evict_expired(self) -> int:
        """Drop every expired cache entry. Returns the number of entries removed."""
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._cache.items() if now >= expires_at]
        for key in expired:
            del self._cache[key]
        if expired:
            logger.debug("view.cache_evicted", count=len(expired), remaining=len(self._cache))
        return len(expired)

    def _log_prefetch_failure(self, key: str, task: "asyncio.Task[ViewResult]") -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("view.prefetch_failed", key=key, error=str(error), exc_info=error)

    async def _fetch(self, key: str) -> ViewResult:
        start = time.monotonic()
        fetched = await self.client.get_object(key)

        if not fetched.success:
            result = ViewResult(
                success=False,
                key=key,
                error=fetched.error,
                error_kind=fetched.error_kind,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        elif is_image_key(key):
            result = self._image_view(key, fetched.data or b"", fetched.size, fetched.content_type)
        else:
            result = ViewResult(
                success=True,
                key=key,
                content=fetched.text(),
                size=fetched.size,
                content_type=fetched.content_type or "text/plain",
            )

        result.duration_ms = int((time.monotonic() - start) * 1000)
        if result.success or result.error_kind in _CACHEABLE_ERRORS:
            self.evict_expired()
            self._cache[key] = (self._clock() + self.cache_ttl_seconds, result)
        else:
            logger.warning("view.resolve_failed", key=key, error=result.error)
        return result

    def _image_view(
        self, key: str, data: bytes, size: int, content_type: str | None
    ) -> ViewResult:
        if size > self.max_preview_bytes:
            logger.info("view.too_large", key=key, size=size)
            return ViewResult(
                success=False,
                key=key,
                size=size,
                content_type=content_type,
                error=(
                    f"Image too large for preview "
                    f"(>{format_megabytes(self.max_preview_bytes)}MB)"
                ),
                error_kind=ErrorKind.TOO_LARGE,
            )

        mime = content_type or "image/jpeg"
        encoded = base64.b64encode(data).decode("ascii")
        return ViewResult(
            success=True,
            key=key,
            url=f"data:{mime};base64,{encoded}",
            size=size,
            content_type=mime,
        )
