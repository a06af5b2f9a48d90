"""Domain entities: stored images, generation slots and result envelopes."""

from imagestudio.models.results import FailedUpload, GenerationResult, ReferenceUploadResult
from imagestudio.models.slot import (
    GenerationSlot,
    InvalidStateTransition,
    SlotNotFoundError,
    SlotStatus,
)
from imagestudio.models.stored_image import (
    SUPPORTED_FORMATS,
    ImageFormat,
    ImageKind,
    StoredImage,
)

__all__ = [
    "GenerationSlot",
    "SlotStatus",
    "InvalidStateTransition",
    "SlotNotFoundError",
    "StoredImage",
    "ImageFormat",
    "ImageKind",
    "SUPPORTED_FORMATS",
    "GenerationResult",
    "ReferenceUploadResult",
    "FailedUpload",
]
