"""Generation request executor: one prompt in, one stored image (or error) out.

Workflow:
1. Validate credential format, prompt, reference count and every in-memory
   reference file (no network I/O so far)
2. Fetch references given as storage keys and validate them the same way
3. Request exactly one image from the hosted model
4. Persist the image bytes under ``generations/`` with descriptive metadata
5. Return a normalized GenerationResult

Every StudioError is converted into a failed result, so one request can never
raise into the caller that dispatched it.
"""

import asyncio
import time
from datetime import datetime, timezone
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from imagestudio.core.config import Settings
from imagestudio.models.results import GenerationResult
from imagestudio.models.stored_image import SUPPORTED_FORMATS, ImageFormat, ImageKind, StoredImage
from imagestudio.services.exceptions import (
    ErrorKind,
    InvalidInputError,
    NoImageReturnedError,
    ObjectNotFoundError,
    StorageError,
    StudioError,
)
from imagestudio.services.files import (
    ReferenceFile,
    SerializedFile,
    extension_for_content_type,
    validate_image_file,
)
from imagestudio.services.generation.gemini_client import GeminiImageClient, GeneratedImagePayload
from imagestudio.services.generation.validation import (
    validate_api_key,
    validate_prompt,
    validate_reference_count,
)
from imagestudio.services.storage.client import BlobStoreClient
from imagestudio.services.storage.keys import GENERATED_PREFIX, build_key, key_stem, timestamp_ms

logger = structlog.get_logger(__name__)


class GenerationRequest(BaseModel):
    """Input for a single generation call."""

    prompt: str
    api_key: str = Field(repr=False)
    reference_images: list[SerializedFile] = Field(default_factory=list)
    reference_image_keys: list[str] = Field(default_factory=list)
    image_index: int = Field(default=0, ge=0)
    batch_id: Optional[str] = None


class GenerationExecutor:
    """Performs one generation request against the hosted model."""

    def __init__(self, gemini: GeminiImageClient, blob_client: BlobStoreClient, settings: Settings):
        self.gemini = gemini
        self.blob_client = blob_client
        self.settings = settings

    async def execute(self, request: GenerationRequest) -> GenerationResult:
        """Run one generation call and return a normalized result."""
        start_time = time.monotonic()
        log = logger.bind(batch_id=request.batch_id, image_index=request.image_index)

        try:
            references = self._validate(request)

            log.info(
                "generation.started",
                prompt=request.prompt[:100],
                reference_count=len(references) + len(request.reference_image_keys),
                model=self.gemini.model,
            )

            references.extend(await self._load_stored_references(request.reference_image_keys))
            payload = await self.gemini.generate_image(request.prompt, request.api_key, references)
            image = await self._store(payload, request)

        except StudioError as e:
            duration_ms = int((time.monotonic() - start_time) * 1000)
            log.warning(
                "generation.failed",
                error_kind=e.kind.value,
                error_message=str(e),
                duration_seconds=duration_ms / 1000,
            )
            return GenerationResult.from_error(e, duration_ms)

        duration_ms = int((time.monotonic() - start_time) * 1000)
        log.info(
            "generation.succeeded",
            storage_key=image.storage_key,
            size=image.size,
            duration_seconds=duration_ms / 1000,
        )
        return GenerationResult.succeeded(image, duration_ms)

    def _validate(self, request: GenerationRequest) -> list[ReferenceFile]:
        """Local checks only. Returns decoded in-memory references in order."""
        validate_api_key(request.api_key)
        validate_prompt(request.prompt, self.settings.max_prompt_length)
        validate_reference_count(
            len(request.reference_images) + len(request.reference_image_keys),
            self.settings.max_reference_images,
        )

        references = []
        for position, serialized in enumerate(request.reference_images, start=1):
            try:
                reference = serialized.decode()
                validate_image_file(
                    reference.name,
                    reference.content_type,
                    max(serialized.file_size, reference.size),
                    self.settings.max_file_size_bytes,
                )
            except InvalidInputError as e:
                raise InvalidInputError(
                    f"Reference image {position} ({serialized.file_name}): {e}"
                ) from e
            references.append(reference)
        return references

    async def _load_stored_references(self, keys: list[str]) -> list[ReferenceFile]:
        if not keys:
            return []

        results = await asyncio.gather(*(self.blob_client.get_object(key) for key in keys))

        references = []
        for key, fetched in zip(keys, results):
            if not fetched.success:
                if fetched.error_kind == ErrorKind.NOT_FOUND:
                    raise ObjectNotFoundError(f"Reference image not found: {key}")
                raise StorageError(f"Failed to load reference image {key}: {fetched.error}")

            content_type = fetched.content_type or ""
            try:
                validate_image_file(
                    key, content_type, fetched.size, self.settings.max_file_size_bytes
                )
            except InvalidInputError as e:
                raise InvalidInputError(f"Reference image {key}: {e}") from e
            references.append(
                ReferenceFile(name=key, content_type=content_type, data=fetched.data or b"")
            )
        return references

    async def _store(
        self, payload: GeneratedImagePayload, request: GenerationRequest
    ) -> StoredImage:
        if payload.mime_type not in SUPPORTED_FORMATS:
            raise NoImageReturnedError(
                f"Model returned an unsupported image format: {payload.mime_type}"
            )

        timestamp = timestamp_ms()
        extension = extension_for_content_type(payload.mime_type, default="png")
        storage_key = build_key(
            GENERATED_PREFIX, extension, index=request.image_index, timestamp=timestamp
        )
        created_at = datetime.now(timezone.utc)

        put = await self.blob_client.put_object(
            storage_key,
            payload.data,
            content_type=payload.mime_type,
            custom_metadata={
                "generatedAt": created_at.isoformat(),
                "prompt": request.prompt[: self.settings.metadata_prompt_limit],
                "imageIndex": str(request.image_index),
                "batchId": request.batch_id or "",
                "model": self.gemini.model,
            },
        )
        if not put.success:
            raise StorageError(f"Failed to store generated image: {put.error}")

        return StoredImage(
            id=key_stem(storage_key),
            storage_key=storage_key,
            filename=f"generated-{timestamp}-{request.image_index}.{extension}",
            format=ImageFormat(payload.mime_type),
            size=len(payload.data),
            kind=ImageKind.GENERATED,
            created_at=created_at,
        )
