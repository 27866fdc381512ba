"""Gemini image generation client.

Wraps the synchronous google-genai SDK: calls run in a thread with a
timeout, the first image part of the response becomes a PNG data URI, and
SDK failures are classified into GenerationError with a retryable flag.
"""

from __future__ import annotations

import asyncio
import io
from typing import Any

import structlog
from google import genai
from google.genai import types
from PIL import Image

from atelier.errors import GenerationError, InvalidPayloadError
from atelier.utils.http import ImageFetchError, download_images
from atelier.utils.image import image_to_data_uri
from atelier.utils.r2 import decode_data_uri

logger = structlog.get_logger()

MAX_INPUT_IMAGES = 14  # Gemini Pro image model limit

IMAGE_CONFIG = types.GenerateContentConfig(
    response_modalities=["TEXT", "IMAGE"],
)

NUDGE = "Please generate the room image now."


def extract_image(response: types.GenerateContentResponse) -> Image.Image | None:
    """Extract the first image from a Gemini response as PIL Image.

    Returns None if no image parts found. May raise if image data is corrupt.
    """
    if not response.candidates:
        return None
    content = response.candidates[0].content
    if content is None or content.parts is None:
        return None
    for part in content.parts:
        inline = part.inline_data
        if inline is None or not inline.data:
            continue
        if inline.mime_type and not inline.mime_type.startswith("image/"):
            continue
        try:
            return Image.open(io.BytesIO(inline.data))
        except Exception:
            logger.error("gemini_image_decode_failed", image_bytes_len=len(inline.data))
            raise
    return None


def extract_text(response: types.GenerateContentResponse) -> str:
    try:
        return response.text or ""
    except ValueError:
        return ""


def classify_error(exc: Exception) -> GenerationError:
    """Map an SDK exception to GenerationError."""
    error_type = type(exc).__name__
    error_msg = str(exc)

    is_rate_limit = (
        "429" in error_msg or "RESOURCE_EXHAUSTED" in error_msg or "ResourceExhausted" in error_type
    )
    if is_rate_limit:
        return GenerationError("Gemini rate limited", retryable=True)
    if "SAFETY" in error_msg or "blocked" in error_msg.lower():
        return GenerationError(f"Content policy violation: {error_msg[:200]}", retryable=False)
    return GenerationError(f"Generation failed: {error_type}: {error_msg[:200]}")


class GeminiImageGenerator:
    def __init__(
        self,
        api_key: str,
        model: str,
        *,
        timeout_seconds: float = 150.0,
        client: Any = None,
    ) -> None:
        self.model = model
        self.timeout_seconds = timeout_seconds
        self._client = client or genai.Client(api_key=api_key)

    async def _load_references(self, references: list[str]) -> list[Image.Image]:
        inline: list[Image.Image] = []
        remote: list[str] = []
        for ref in references[:MAX_INPUT_IMAGES]:
            if ref.startswith("data:"):
                decoded = decode_data_uri(ref)
                inline.append(Image.open(io.BytesIO(decoded.data)))
            else:
                remote.append(ref)
        return inline + await download_images(remote)

    async def _call(self, contents: list) -> types.GenerateContentResponse:
        # Sync SDK call in a thread, bounded so a hung request cannot pin the worker
        async with asyncio.timeout(self.timeout_seconds):
            return await asyncio.to_thread(
                self._client.models.generate_content,
                model=self.model,
                contents=contents,
                config=IMAGE_CONFIG,
            )

    async def generate(self, prompt: str, reference_images: list[str]) -> str:
        try:
            images = await self._load_references(reference_images)
        except InvalidPayloadError as exc:
            raise GenerationError(f"Invalid reference image: {exc.message}", retryable=False) from exc
        except ImageFetchError as exc:
            raise GenerationError(str(exc), retryable=exc.retryable) from exc

        contents: list = [*images, prompt]
        logger.info("gemini_generate_start", model=self.model, num_reference_images=len(images))
        try:
            response = await self._call(contents)
            result = extract_image(response)
            if result is None:
                logger.warning("gemini_no_image_response", gemini_text=extract_text(response)[:300])
                response = await self._call(contents + [NUDGE])
                result = extract_image(response)
        except TimeoutError as exc:
            raise GenerationError(f"Gemini API timed out after {self.timeout_seconds:.0f}s") from exc
        except GenerationError:
            raise
        except Exception as exc:
            raise classify_error(exc) from exc

        if result is None:
            raise GenerationError(
                f"Gemini returned text-only response: {extract_text(response)[:200]}"
            )
        return image_to_data_uri(result)
