"""Service error hierarchy for generation, upload and storage operations.

This module defines the exception hierarchy for service-level errors:
- StudioError: Base for all service errors, tagged with an ErrorKind
- InvalidInputError: Rejected before any network call (credential, prompt, files, counts)
- ProviderError: Failures reported by the hosted generation endpoint
- StorageError: Object store failures
- NoImageReturnedError: The endpoint answered but produced no usable image

Each error carries a user-facing message; callers that only need a string
(slot error text, upload failure reason) use ``str(error)``.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Failure taxonomy tag retained for tests and telemetry."""

    CREDENTIAL_INVALID = "credential_invalid"
    QUOTA_EXCEEDED = "quota_exceeded"
    RATE_LIMITED = "rate_limited"
    VALIDATION_FAILED = "validation_failed"
    NO_IMAGE_RETURNED = "no_image_returned"
    STORAGE_FAILED = "storage_failed"
    NOT_FOUND = "not_found"
    TOO_LARGE = "too_large"
    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    NETWORK = "network"
    UNKNOWN = "unknown"


QUOTA_EXCEEDED_MESSAGE = "API quota exceeded. Please check your Google API usage limits."
INVALID_API_KEY_MESSAGE = "Invalid API key. Please check your Google API key."
RATE_LIMITED_MESSAGE = "Rate limit exceeded. Please wait a moment before trying again."
CANCELLED_MESSAGE = "Cancelled by user."


class StudioError(Exception):
    """Base exception for all service errors."""

    kind: ErrorKind = ErrorKind.UNKNOWN

    @property
    def message(self) -> str:
        return str(self)


class InvalidInputError(StudioError):
    """Input rejected by local validation. Never costs a network call."""

    kind = ErrorKind.VALIDATION_FAILED


class InvalidCredentialError(InvalidInputError):
    """API key does not match the provider's key format."""

    kind = ErrorKind.CREDENTIAL_INVALID


# Hosted endpoint errors
class ProviderError(StudioError):
    """Base exception for hosted generation endpoint errors."""

    pass


class ProviderAuthError(ProviderError):
    """Authentication failure (401, 403, invalid key)."""

    kind = ErrorKind.CREDENTIAL_INVALID


class QuotaExceededError(ProviderError):
    """Account quota exhausted."""

    kind = ErrorKind.QUOTA_EXCEEDED


class RateLimitError(ProviderError):
    """Rate limit exceeded (429 without a quota message)."""

    kind = ErrorKind.RATE_LIMITED


class ProviderTimeoutError(ProviderError):
    """No response within the configured request timeout."""

    kind = ErrorKind.TIMEOUT


class ProviderUnavailableError(ProviderError):
    """Service unavailable (5xx)."""

    kind = ErrorKind.NETWORK


class ProviderNetworkError(ProviderError):
    """Connection-level failure before a response was received."""

    kind = ErrorKind.NETWORK


class NoImageReturnedError(StudioError):
    """The endpoint returned no image part with a non-empty payload."""

    kind = ErrorKind.NO_IMAGE_RETURNED


# Storage errors
class StorageError(StudioError):
    """Object store put/get/list/delete failure."""

    kind = ErrorKind.STORAGE_FAILED


class ObjectNotFoundError(StorageError):
    """No object stored under the requested key."""

    kind = ErrorKind.NOT_FOUND


def classify_provider_error(
    status_code: int | None, status: str | None, message: str
) -> ProviderError:
    """Classify a hosted endpoint failure into a ProviderError subclass.

    Args:
        status_code: HTTP status code of the response (None if no response)
        status: Structured error status from the response body (e.g. "RESOURCE_EXHAUSTED")
        message: Error message from the response body or exception

    Returns:
        Classified ProviderError instance carrying a user-facing message

    Classification rules:
        - 401/403, UNAUTHENTICATED, PERMISSION_DENIED, API_KEY_INVALID → ProviderAuthError
        - 429 or RESOURCE_EXHAUSTED → QuotaExceededError if the message mentions quota,
          RateLimitError otherwise
        - 5xx or UNAVAILABLE → ProviderUnavailableError
        - Without a structured signal, substring matching on the message:
          "quota", "authentication"/"api key", "rate limit"
        - Anything else → ProviderError carrying the provider message
    """
    message_lower = message.lower()
    status_upper = (status or "").upper()

    if (
        status_code in (401, 403)
        or status_upper in ("UNAUTHENTICATED", "PERMISSION_DENIED")
        or "api_key_invalid" in message_lower
        or (status_code == 400 and "api key not valid" in message_lower)
    ):
        return ProviderAuthError(INVALID_API_KEY_MESSAGE)

    if status_code == 429 or status_upper == "RESOURCE_EXHAUSTED":
        if "quota" in message_lower:
            return QuotaExceededError(QUOTA_EXCEEDED_MESSAGE)
        return RateLimitError(RATE_LIMITED_MESSAGE)

    if (status_code is not None and status_code >= 500) or status_upper == "UNAVAILABLE":
        return ProviderUnavailableError(
            f"Generation service unavailable ({status_code or status_upper}). "
            "Please try again later."
        )

    # No structured signal: fall back to message matching
    if "quota" in message_lower:
        return QuotaExceededError(QUOTA_EXCEEDED_MESSAGE)
    if "authentication" in message_lower or "api key" in message_lower:
        return ProviderAuthError(INVALID_API_KEY_MESSAGE)
    if "rate limit" in message_lower:
        return RateLimitError(RATE_LIMITED_MESSAGE)

    return ProviderError(message or "Image generation failed")
