"""Input validation for image generation.

Everything here runs before any network call, so rejected input never
consumes quota or waits on the hosted endpoint.
"""

from imagestudio.services.exceptions import InvalidCredentialError, InvalidInputError

API_KEY_PREFIX = "AIza"
API_KEY_LENGTH = 39


def validate_api_key(api_key: str) -> str:
    """Validate Google API key format.

    Args:
        api_key: Key supplied by the user

    Returns:
        Validated key (unchanged if valid)

    Raises:
        InvalidCredentialError: If the key is missing, has the wrong prefix or wrong length
    """
    if not isinstance(api_key, str):
        raise InvalidCredentialError("API key must be a string")

    if not api_key.strip():
        raise InvalidCredentialError("API key is required")

    if not api_key.startswith(API_KEY_PREFIX):
        raise InvalidCredentialError(f'Google API key must start with "{API_KEY_PREFIX}"')

    if len(api_key) != API_KEY_LENGTH:
        raise InvalidCredentialError(
            f"Google API key must be {API_KEY_LENGTH} characters long (got {len(api_key)})"
        )

    return api_key


def validate_prompt(prompt: str, max_length: int = 2000) -> str:
    """Validate prompt text for image generation.

    Raises:
        InvalidInputError: If prompt is empty, not a string, or exceeds max_length characters
    """
    if not isinstance(prompt, str):
        raise InvalidInputError(f"Prompt must be a string, got {type(prompt).__name__}")

    if not prompt.strip():
        raise InvalidInputError("Prompt is required")

    if len(prompt) > max_length:
        raise InvalidInputError(
            f"Prompt exceeds maximum length of {max_length} characters (got {len(prompt)})"
        )

    return prompt


def validate_image_count(image_count: int, max_images: int = 5) -> int:
    """Validate the number of images requested for one batch.

    Raises:
        InvalidInputError: If image_count is not an integer in 1..max_images
    """
    if isinstance(image_count, bool) or not isinstance(image_count, int):
        raise InvalidInputError(f"Image count must be an integer, got {type(image_count).__name__}")

    if not 1 <= image_count <= max_images:
        raise InvalidInputError(
            f"Image count must be between 1 and {max_images} (got {image_count})"
        )

    return image_count


def validate_reference_count(count: int, max_references: int = 5) -> int:
    """Raises InvalidInputError if more than max_references references are supplied."""
    if count > max_references:
        raise InvalidInputError(
            f"Maximum {max_references} reference images allowed (got {count})"
        )
    return count
