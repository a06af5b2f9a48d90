"""StoredImage entity - blob-store-backed image reference."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ImageFormat(str, Enum):
    """Supported image MIME types."""

    JPEG = "image/jpeg"
    PNG = "image/png"
    WEBP = "image/webp"
    GIF = "image/gif"


SUPPORTED_FORMATS: tuple[str, ...] = tuple(fmt.value for fmt in ImageFormat)


class ImageKind(str, Enum):
    """Origin of a stored image."""

    REFERENCE = "reference"
    GENERATED = "generated"


class StoredImage(BaseModel):
    """An image whose bytes are durably written to the blob store.

    Never mutated after creation. ``storage_key`` is the only handle needed to
    fetch the bytes again.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    storage_key: str = Field(min_length=1)
    filename: str
    original_name: Optional[str] = None
    format: ImageFormat
    size: int = Field(ge=0)
    kind: ImageKind
    created_at: Optional[datetime] = None
