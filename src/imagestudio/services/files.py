"""Local file handling: validation and transport-safe encoding.

Reference images travel between layers as base64 data URLs
(``data:<mime>;base64,<payload>``) and are decoded back to raw bytes, with
their original content type, right before they are stored or sent to the model.
"""

import base64
import binascii
import re
from dataclasses import dataclass

from pydantic import BaseModel, Field

from imagestudio.models.stored_image import SUPPORTED_FORMATS
from imagestudio.services.exceptions import InvalidInputError

MB = 1024 * 1024

_DATA_URL_RE = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<params>(;[^,;]+)*),(?P<data>.*)$", re.S
)

_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/webp": "webp",
    "image/gif": "gif",
}


@dataclass(frozen=True)
class ReferenceFile:
    """A locally selected image file held in memory."""

    name: str
    content_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    def serialize(self) -> "SerializedFile":
        """Encode this file for transport."""
        return SerializedFile(
            file_name=self.name,
            file_type=self.content_type,
            file_size=self.size,
            file_data=to_data_url(self.data, self.content_type),
        )


class SerializedFile(BaseModel):
    """Transport form of a ReferenceFile."""

    file_name: str = Field(min_length=1)
    file_type: str
    file_size: int = Field(ge=0)
    file_data: str

    def decode(self) -> ReferenceFile:
        """Decode the payload back into raw bytes, keeping the declared content type.

        Raises:
            InvalidInputError: If the payload is not valid base64
        """
        data, _ = from_data_url(self.file_data)
        return ReferenceFile(name=self.file_name, content_type=self.file_type, data=data)


def to_data_url(data: bytes, content_type: str) -> str:
    """Encode bytes as a base64 data URL."""
    return f"data:{content_type};base64,{base64.b64encode(data).decode('ascii')}"


def from_data_url(value: str) -> tuple[bytes, str | None]:
    """Decode a data URL (or bare base64 string) into bytes and its MIME type.

    Raises:
        InvalidInputError: If the payload cannot be decoded
    """
    mime = None
    payload = value
    match = _DATA_URL_RE.match(value)
    if match:
        mime = match.group("mime")
        payload = match.group("data")
    try:
        return base64.b64decode(payload, validate=True), mime
    except (binascii.Error, ValueError) as e:
        raise InvalidInputError(f"Invalid base64 file data: {e}") from e


def validate_image_file(
    name: str,
    content_type: str,
    size: int,
    max_file_size: int = 5 * MB,
    supported_formats: tuple[str, ...] = SUPPORTED_FORMATS,
) -> None:
    """Validate a file against size and format limits.

    Raises:
        InvalidInputError: If the file is too large or its type is not supported
    """
    if size > max_file_size:
        raise InvalidInputError(
            f"File size ({size / MB:.2f}MB) exceeds maximum allowed size of "
            f"{format_megabytes(max_file_size)}MB"
        )

    if content_type not in supported_formats:
        raise InvalidInputError(
            f"Unsupported file format: {content_type or 'unknown'}. "
            f"Supported formats: {', '.join(supported_formats)}"
        )


def format_megabytes(size: int) -> str:
    megabytes = size / MB
    return str(int(megabytes)) if megabytes.is_integer() else f"{megabytes:.2f}"


def format_file_size(size: int) -> str:
    """Human-readable byte count (e.g. ``"1.5 MB"``)."""
    if size <= 0:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{round(value, 2):g} {unit}"
        value /= 1024
    return f"{size} B"


def sanitize_filename(filename: str) -> str:
    """Replace characters that are invalid in file names and cap the length."""
    cleaned = re.sub(r'[<>:"/\\|?*]', "_", filename)
    cleaned = re.sub(r"\s+", "_", cleaned)
    return cleaned[:255]


def extension_for_content_type(content_type: str | None, default: str = "jpg") -> str:
    return _EXTENSIONS.get((content_type or "").lower(), default)


def extension_from_filename(filename: str, default: str = "jpg") -> str:
    if "." not in filename:
        return default
    extension = filename.rsplit(".", 1)[-1].lower()
    return extension if extension.isalnum() else default
