"""Result envelopes returned across slot and file boundaries."""

from typing import Optional

from pydantic import BaseModel, Field

from imagestudio.models.stored_image import StoredImage
from imagestudio.services.exceptions import ErrorKind, StudioError


class GenerationResult(BaseModel):
    """Normalized outcome of one generation request."""

    success: bool
    image: Optional[StoredImage] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    duration_ms: int = Field(default=0, ge=0)

    @classmethod
    def succeeded(cls, image: StoredImage, duration_ms: int = 0) -> "GenerationResult":
        return cls(success=True, image=image, duration_ms=duration_ms)

    @classmethod
    def failed(
        cls, error: str, kind: ErrorKind = ErrorKind.UNKNOWN, duration_ms: int = 0
    ) -> "GenerationResult":
        return cls(success=False, error=error, error_kind=kind, duration_ms=duration_ms)

    @classmethod
    def from_error(cls, exc: StudioError, duration_ms: int = 0) -> "GenerationResult":
        return cls.failed(exc.message, exc.kind, duration_ms)


class FailedUpload(BaseModel):
    """One reference file that could not be stored."""

    file_name: str
    error: str
    error_kind: ErrorKind = ErrorKind.UNKNOWN


class ReferenceUploadResult(BaseModel):
    """Aggregate outcome of a reference batch upload, in input order."""

    uploaded: list[StoredImage] = Field(default_factory=list)
    failed: list[FailedUpload] = Field(default_factory=list)

    @property
    def storage_keys(self) -> list[str]:
        return [image.storage_key for image in self.uploaded]
