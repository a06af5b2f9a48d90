"""Gemini image generation client with error classification."""

import base64
import binascii
from dataclasses import dataclass
from typing import Any, Literal, Optional, Sequence, Union

import httpx
import structlog
from pydantic import BaseModel

from imagestudio.services.exceptions import (
    NoImageReturnedError,
    ProviderError,
    ProviderNetworkError,
    ProviderTimeoutError,
    classify_provider_error,
)
from imagestudio.services.files import ReferenceFile

logger = structlog.get_logger(__name__)


class TextPart(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    type: Literal["image"] = "image"
    image: bytes
    media_type: str


class Message(BaseModel):
    role: Literal["user"] = "user"
    content: list[Union[TextPart, ImagePart]]


class GenerationPrompt(BaseModel):
    """Either a plain text prompt or a multimodal message list."""

    text: Optional[str] = None
    messages: Optional[list[Message]] = None

    @property
    def is_multimodal(self) -> bool:
        return self.messages is not None


@dataclass(frozen=True)
class GeneratedImagePayload:
    data: bytes
    mime_type: str


class GeminiImageClient:
    """Client for the Gemini ``generateContent`` endpoint, one output image per call."""

    def __init__(
        self,
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        model: str = "gemini-2.5-flash-image-preview",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Gemini client.

        Args:
            base_url: API root (e.g. https://generativelanguage.googleapis.com/v1beta)
            model: Image-capable model identifier
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self.transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    @staticmethod
    def build_prompt(prompt: str, references: Sequence[ReferenceFile] = ()) -> GenerationPrompt:
        """Build the prompt structure sent to the model.

        Without references the prompt is plain text. With references it becomes
        one user message holding the text part followed by one image part per
        reference, in the order supplied.
        """
        if not references:
            return GenerationPrompt(text=prompt)

        content: list[Union[TextPart, ImagePart]] = [TextPart(text=prompt)]
        for reference in references:
            content.append(ImagePart(image=reference.data, media_type=reference.content_type))
        return GenerationPrompt(messages=[Message(content=content)])

    @staticmethod
    def to_payload(prompt: GenerationPrompt) -> dict[str, Any]:
        """Render a GenerationPrompt as a Gemini REST request body."""
        if prompt.messages is None:
            contents: list[dict[str, Any]] = [{"parts": [{"text": prompt.text or ""}]}]
        else:
            contents = []
            for message in prompt.messages:
                parts: list[dict[str, Any]] = []
                for part in message.content:
                    if isinstance(part, TextPart):
                        parts.append({"text": part.text})
                    else:
                        parts.append(
                            {
                                "inlineData": {
                                    "mimeType": part.media_type,
                                    "data": base64.b64encode(part.image).decode("ascii"),
                                }
                            }
                        )
                contents.append({"role": message.role, "parts": parts})

        return {
            "contents": contents,
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "candidateCount": 1,
            },
        }

    async def generate_image(
        self,
        prompt: str,
        api_key: str,
        references: Sequence[ReferenceFile] = (),
    ) -> GeneratedImagePayload:
        """Request exactly one image from the model.

        Args:
            prompt: Text prompt
            api_key: Google API key (validated by the caller)
            references: Reference images, attached in order

        Returns:
            First image part with a non-empty payload

        Raises:
            ProviderAuthError, QuotaExceededError, RateLimitError: Classified provider failures
            ProviderTimeoutError: No response within the configured timeout
            ProviderNetworkError: Connection failure
            NoImageReturnedError: Response contained no usable image
        """
        payload = self.to_payload(self.build_prompt(prompt, references))

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    self.endpoint,
                    json=payload,
                    headers={
                        "Content-Type": "application/json",
                        "x-goog-api-key": api_key,
                    },
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeoutError(
                f"Image generation timed out after {self.timeout:g}s. Please try again."
            ) from e
        except httpx.HTTPError as e:
            raise ProviderNetworkError(f"Network error: {e}") from e

        if response.status_code != 200:
            raise self._classify_response(response)

        try:
            body = response.json()
        except ValueError as e:
            raise ProviderError(f"Malformed response from generation service: {e}") from e

        image = self.extract_first_image(body)
        if image is None:
            raise NoImageReturnedError(self._no_image_message(body))
        return image

    @staticmethod
    def extract_first_image(body: dict[str, Any]) -> GeneratedImagePayload | None:
        """Return the first image-typed part with a non-empty payload, if any."""
        for candidate in body.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                inline = part.get("inlineData") or part.get("inline_data")
                if not inline:
                    continue
                mime_type = inline.get("mimeType") or inline.get("mime_type") or ""
                if not mime_type.startswith("image/") or not inline.get("data"):
                    continue
                try:
                    data = base64.b64decode(inline["data"])
                except (binascii.Error, ValueError):
                    logger.warning("generation.undecodable_image_part", mime_type=mime_type)
                    continue
                if data:
                    return GeneratedImagePayload(data=data, mime_type=mime_type)
        return None

    @staticmethod
    def _no_image_message(body: dict[str, Any]) -> str:
        block_reason = (body.get("promptFeedback") or {}).get("blockReason")
        if block_reason:
            return f"No image returned: prompt was blocked ({block_reason})."
        return "No image returned. Please try a different prompt."

    @staticmethod
    def _classify_response(response: httpx.Response) -> ProviderError:
        status = None
        message = response.text
        try:
            error = response.json().get("error") or {}
        except ValueError:
            error = {}
        if isinstance(error, dict) and error:
            status = error.get("status")
            message = error.get("message") or message
            reasons = [
                detail.get("reason", "")
                for detail in error.get("details") or []
                if isinstance(detail, dict)
            ]
            if any(reasons):
                message = f"{message} ({', '.join(r for r in reasons if r)})"

        classified = classify_provider_error(response.status_code, status, message)
        logger.warning(
            "generation.provider_error",
            status_code=response.status_code,
            status=status,
            error_kind=classified.kind.value,
        )
        return classified
