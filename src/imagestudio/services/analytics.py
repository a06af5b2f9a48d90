"""Execution analytics: daily counters in a key-value store, exported as JSON blobs."""

import json
import time
from datetime import datetime, timezone
from typing import Callable, Optional, Protocol

import structlog
from pydantic import BaseModel, Field

from imagestudio.services.exceptions import ErrorKind, StorageError
from imagestudio.services.storage.client import BlobStoreClient

logger = structlog.get_logger(__name__)

COUNTER_PREFIX = "server_executions"


class KeyValueStore(Protocol):
    """String key-value store with per-entry expiry. Implementations raise StorageError."""

    async def get(self, key: str) -> Optional[str]: ...

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None: ...


class MemoryKeyValueStore:
    """In-process key-value store; expired entries are dropped on read."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: dict[str, tuple[str, Optional[float]]] = {}

    async def get(self, key: str) -> Optional[str]:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def put(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = self._clock() + ttl_seconds if ttl_seconds else None
        self._entries[key] = (value, expires_at)


class ExecutionCountResult(BaseModel):
    success: bool
    count: int = 0
    date: Optional[str] = None
    error: Optional[str] = None


class ExportResult(BaseModel):
    success: bool
    filename: Optional[str] = None
    size: int = 0
    execution_count: int = 0
    date: Optional[str] = None
    error: Optional[str] = None


class ExportInfo(BaseModel):
    filename: str
    size: int
    uploaded_at: Optional[datetime] = None
    metadata: dict[str, str] = Field(default_factory=dict)


class ExportListResult(BaseModel):
    success: bool
    exports: list[ExportInfo] = Field(default_factory=list)
    error: Optional[str] = None


class ExportDownload(BaseModel):
    success: bool
    filename: str
    content: Optional[str] = None
    content_type: Optional[str] = None
    size: int = 0
    metadata: dict[str, str] = Field(default_factory=dict)
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None


def counter_key(date: str) -> str:
    return f"{COUNTER_PREFIX}:{date}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ExecutionCounter:
    """Counts started generation batches per UTC day."""

    def __init__(
        self,
        store: KeyValueStore,
        export_client: BlobStoreClient,
        ttl_seconds: int = 86400,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.export_client = export_client
        self.ttl_seconds = ttl_seconds
        self._clock = clock

    def today(self) -> str:
        return self._clock().date().isoformat()

    async def track_execution(self) -> ExecutionCountResult:
        """Increment today's counter."""
        today = self.today()
        key = counter_key(today)
        try:
            current = await self.store.get(key)
            count = int(current) + 1 if current else 1
            await self.store.put(key, str(count), ttl_seconds=self.ttl_seconds)
        except (StorageError, ValueError) as e:
            logger.error("analytics.track_failed", key=key, error=str(e))
            return ExecutionCountResult(success=False, date=today, error=str(e))

        logger.info("analytics.execution_tracked", date=today, count=count)
        return ExecutionCountResult(success=True, count=count, date=today)

    async def get_execution_count(self, date: Optional[str] = None) -> ExecutionCountResult:
        day = date or self.today()
        try:
            current = await self.store.get(counter_key(day))
        except StorageError as e:
            logger.error("analytics.read_failed", date=day, error=str(e))
            return ExecutionCountResult(success=False, date=day, error=str(e))
        return ExecutionCountResult(success=True, count=int(current) if current else 0, date=day)

    async def export_to_storage(self, date: Optional[str] = None) -> ExportResult:
        """Write the day's count to the export store as ``analytics-{date}-{time}.json``."""
        counted = await self.get_execution_count(date)
        if not counted.success:
            return ExportResult(success=False, date=counted.date, error=counted.error)

        now = self._clock()
        export_date = counted.date or self.today()
        filename = f"analytics-{export_date}-{now.strftime('%Y-%m-%dT%H-%M-%S')}.json"
        content = json.dumps(
            {
                "date": export_date,
                "executions": counted.count,
                "exported": int(now.timestamp() * 1000),
            },
            indent=2,
        )

        put = await self.export_client.put_text(
            filename,
            content,
            content_type="application/json",
            custom_metadata={
                "exportDate": export_date,
                "executionCount": str(counted.count),
                "exportType": COUNTER_PREFIX,
            },
        )
        if not put.success:
            return ExportResult(success=False, date=export_date, error=put.error)

        logger.info("analytics.exported", filename=filename, count=counted.count)
        return ExportResult(
            success=True,
            filename=filename,
            size=put.size,
            execution_count=counted.count,
            date=export_date,
        )

    async def list_exports(self) -> ExportListResult:
        listed = await self.export_client.list_objects(limit=BlobStoreClient.MAX_LIST_LIMIT)
        if not listed.success:
            return ExportListResult(success=False, error=listed.error)
        return ExportListResult(
            success=True,
            exports=[
                ExportInfo(
                    filename=obj.key,
                    size=obj.size,
                    uploaded_at=obj.uploaded_at,
                    metadata=obj.custom_metadata,
                )
                for obj in listed.objects
            ],
        )

    async def download_export(self, filename: str) -> ExportDownload:
        fetched = await self.export_client.get_object(filename)
        if not fetched.success:
            missing = fetched.error_kind == ErrorKind.NOT_FOUND
            return ExportDownload(
                success=False,
                filename=filename,
                error="File not found" if missing else fetched.error,
                error_kind=fetched.error_kind,
            )
        return ExportDownload(
            success=True,
            filename=filename,
            content=fetched.text(),
            content_type=fetched.content_type or "application/json",
            size=fetched.size,
            metadata=fetched.custom_metadata,
        )
