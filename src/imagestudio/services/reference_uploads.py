"""Reference image uploads.

ReferenceUploadCoordinator stores a batch of user-selected images under the
``reference_image/`` namespace, one concurrent upload per file. A failing file
is reported in ``failed`` and never affects the others.

ReferenceImageTracker is the fire-and-forget surface used by a session: it
starts an upload in the background and exposes the latest uploaded keys.
"""

import asyncio
from datetime import datetime, timezone
from typing import Optional, Sequence, Union

import structlog

from imagestudio.core.config import Settings
from imagestudio.models.results import FailedUpload, ReferenceUploadResult
from imagestudio.models.stored_image import ImageFormat, ImageKind, StoredImage
from imagestudio.services.exceptions import InvalidInputError, StorageError, StudioError
from imagestudio.services.files import (
    ReferenceFile,
    SerializedFile,
    extension_from_filename,
    validate_image_file,
)
from imagestudio.services.generation.validation import validate_reference_count
from imagestudio.services.storage.client import BlobStoreClient
from imagestudio.services.storage.keys import REFERENCE_PREFIX, build_key, key_stem, timestamp_ms

logger = structlog.get_logger(__name__)

UploadFile = Union[ReferenceFile, SerializedFile]


def _serialized(file: UploadFile) -> SerializedFile:
    return file if isinstance(file, SerializedFile) else file.serialize()


class ReferenceUploadCoordinator:
    """Uploads reference images to the blob store."""

    def __init__(self, blob_client: BlobStoreClient, settings: Settings):
        self.blob_client = blob_client
        self.settings = settings

    async def upload_references(self, files: Sequence[UploadFile]) -> ReferenceUploadResult:
        """Upload every file concurrently.

        Args:
            files: Files to upload, in display order

        Returns:
            ReferenceUploadResult with ``uploaded`` and ``failed`` in input order

        Raises:
            InvalidInputError: If more files than max_reference_images are supplied
        """
        validate_reference_count(len(files), self.settings.max_reference_images)
        if not files:
            return ReferenceUploadResult()

        batch_timestamp = timestamp_ms()
        outcomes = await asyncio.gather(
            *(
                self._upload_one(file, index, batch_timestamp)
                for index, file in enumerate(files)
            )
        )

        result = ReferenceUploadResult(
            uploaded=[o for o in outcomes if isinstance(o, StoredImage)],
            failed=[o for o in outcomes if isinstance(o, FailedUpload)],
        )
        logger.info(
            "reference_upload.completed",
            uploaded=len(result.uploaded),
            failed=len(result.failed),
            batch_timestamp=batch_timestamp,
        )
        return result

    async def upload_reference(self, file: UploadFile) -> StoredImage:
        """Upload a single reference image.

        Raises:
            InvalidInputError: If the file fails size/type validation
            StorageError: If the blob store rejects the write
        """
        return await self._store(_serialized(file), index=0, batch_timestamp=timestamp_ms())

    async def _upload_one(
        self, file: UploadFile, index: int, batch_timestamp: int
    ) -> Union[StoredImage, FailedUpload]:
        serialized = _serialized(file)
        try:
            return await self._store(serialized, index, batch_timestamp)
        except StudioError as e:
            logger.warning(
                "reference_upload.file_failed",
                file_name=serialized.file_name,
                error_kind=e.kind.value,
                error=str(e),
            )
            return FailedUpload(file_name=serialized.file_name, error=str(e), error_kind=e.kind)

    async def _store(
        self, serialized: SerializedFile, index: int, batch_timestamp: int
    ) -> StoredImage:
        reference = serialized.decode()
        validate_image_file(
            reference.name,
            reference.content_type,
            max(serialized.file_size, reference.size),
            self.settings.max_file_size_bytes,
        )

        storage_key = build_key(
            REFERENCE_PREFIX,
            extension_from_filename(reference.name),
            index=index,
            batch=True,
            timestamp=batch_timestamp,
        )
        uploaded_at = datetime.now(timezone.utc)

        put = await self.blob_client.put_object(
            storage_key,
            reference.data,
            content_type=reference.content_type,
            custom_metadata={
                "originalName": reference.name,
                "uploadType": "reference_batch",
                "uploadedAt": uploaded_at.isoformat(),
                "fileSize": str(reference.size),
                "batchIndex": str(index),
                "batchTimestamp": str(batch_timestamp),
            },
        )
        if not put.success:
            raise StorageError(f"Failed to upload {reference.name}: {put.error}")

        return StoredImage(
            id=key_stem(storage_key),
            storage_key=storage_key,
            filename=storage_key.rsplit("/", 1)[-1],
            original_name=reference.name,
            format=ImageFormat(reference.content_type),
            size=reference.size,
            kind=ImageKind.REFERENCE,
        )


class ReferenceImageTracker:
    """Background reference upload state for one client session.

    Files that fail local validation are skipped before any upload starts.
    Starting a new upload cancels one still in flight.
    """

    def __init__(self, coordinator: ReferenceUploadCoordinator):
        self.coordinator = coordinator
        self._images: list[StoredImage] = []
        self._failed: list[FailedUpload] = []
        self._last_error: Optional[str] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def reference_images(self) -> list[StoredImage]:
        return list(self._images)

    @property
    def reference_image_keys(self) -> list[str]:
        return [image.storage_key for image in self._images]

    @property
    def failed_uploads(self) -> list[FailedUpload]:
        return list(self._failed)

    @property
    def is_uploading(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_error(self) -> Optional[str]:
        return self._last_error

    def start_upload(self, files: Sequence[UploadFile]) -> None:
        """Start uploading the valid subset of ``files`` without waiting for it.

        An empty valid subset clears the current references.
        """
        self._cancel()
        valid, rejected = self._partition(files)

        if not valid:
            self._images = []
            self._failed = rejected
            self._last_error = rejected[0].error if rejected else None
            return

        self._last_error = None
        self._task = asyncio.create_task(self._run(valid, rejected), name="reference-upload")

    async def wait(self) -> None:
        """Wait for the in-flight upload, if any."""
        task = self._task
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    def clear(self) -> None:
        self._cancel()
        self._images = []
        self._failed = []
        self._last_error = None

    async def shutdown(self) -> None:
        task = self._task
        self._cancel()
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def _run(self, files: list[UploadFile], rejected: list[FailedUpload]) -> None:
        try:
            result = await self.coordinator.upload_references(files)
        except InvalidInputError as e:
            self._last_error = str(e)
            logger.warning("reference_upload.rejected", error=str(e))
            return

        self._images = result.uploaded
        self._failed = rejected + result.failed
        if self._failed:
            self._last_error = (
                f"{len(self._failed)} of {len(files) + len(rejected)} "
                "reference images failed to upload"
            )

    def _partition(
        self, files: Sequence[UploadFile]
    ) -> tuple[list[UploadFile], list[FailedUpload]]:
        settings = self.coordinator.settings
        valid: list[UploadFile] = []
        rejected: list[FailedUpload] = []
        for file in files:
            serialized = _serialized(file)
            try:
                validate_image_file(
                    serialized.file_name,
                    serialized.file_type,
                    serialized.file_size,
                    settings.max_file_size_bytes,
                )
            except InvalidInputError as e:
                rejected.append(
                    FailedUpload(file_name=serialized.file_name, error=str(e), error_kind=e.kind)
                )
                continue
            valid.append(file)
        return valid, rejected

    def _cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.debug("reference_upload.superseded")
        self._task = None
