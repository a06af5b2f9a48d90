"""Storage key construction.

Keys are unique by construction (millisecond timestamp + random suffix, plus
the position within a batch), so concurrent writers never need a shared
counter.
"""

import secrets
import string
import time

REFERENCE_PREFIX = "reference_image"
GENERATED_PREFIX = "generations"

_ALPHABET = string.ascii_lowercase + string.digits


def random_suffix(length: int = 6) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def timestamp_ms() -> int:
    return time.time_ns() // 1_000_000


def build_key(
    prefix: str,
    extension: str,
    index: int | None = None,
    batch: bool = False,
    timestamp: int | None = None,
) -> str:
    """Build ``{prefix}/{ms}-[batch-]{index}-{suffix}.{ext}``.

    Examples:
        reference_image/1718000000000-batch-0-k3j9x1.png
        generations/1718000000000-2-a8d0qz.png
    """
    ts = timestamp if timestamp is not None else timestamp_ms()
    parts = [str(ts)]
    if batch:
        parts.append("batch")
    if index is not None:
        parts.append(str(index))
    parts.append(random_suffix())
    return f"{prefix}/{'-'.join(parts)}.{extension}"


def key_stem(key: str) -> str:
    """Last path segment without extension, used as a stable image id."""
    name = key.rsplit("/", 1)[-1]
    return name.rsplit(".", 1)[0]
