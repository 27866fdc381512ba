"""Shared HTTP image download helpers.

Used by the image proxy endpoint to stream stored outputs back to clients
and by the Gemini generator to load reference images. Validates
content-type; failures are raised as typed errors carrying a retryable flag.
"""

from __future__ import annotations

import asyncio
import io
from dataclasses import dataclass

import httpx
from PIL import Image

FETCH_TIMEOUT_SECONDS = 30


class ImageFetchError(Exception):
    def __init__(self, message: str, *, status: int | None = None, retryable: bool = False):
        super().__init__(message)
        self.status = status
        self.retryable = retryable


@dataclass(frozen=True)
class FetchedImage:
    content: bytes
    content_type: str


async def fetch_image_bytes(client: httpx.AsyncClient, url: str) -> FetchedImage:
    """Fetch a single image using the given HTTP client."""
    try:
        response = await client.get(url, timeout=FETCH_TIMEOUT_SECONDS, follow_redirects=True)
    except httpx.TimeoutException as exc:
        raise ImageFetchError(f"Timeout downloading image: {url[:100]}", retryable=True) from exc
    except httpx.RequestError as exc:
        raise ImageFetchError(
            f"Network error downloading image: {url[:100]}: {type(exc).__name__}",
            retryable=True,
        ) from exc

    if response.status_code >= 400:
        # 429 is retryable (throttling); other 4xx are client errors
        retryable = response.status_code >= 500 or response.status_code == 429
        raise ImageFetchError(
            f"HTTP {response.status_code} downloading image: {url[:100]}",
            status=response.status_code,
            retryable=retryable,
        )

    content_type = response.headers.get("content-type", "")
    if content_type and not content_type.startswith("image/"):
        raise ImageFetchError(f"Expected image content-type, got: {content_type}")
    return FetchedImage(content=response.content, content_type=content_type or "image/png")


async def fetch_image(client: httpx.AsyncClient, url: str) -> Image.Image:
    """Fetch and fully decode an image."""
    fetched = await fetch_image_bytes(client, url)
    try:
        img = Image.open(io.BytesIO(fetched.content))
        img.load()  # Force full decode to catch truncation
    except Exception as exc:
        raise ImageFetchError(f"Downloaded image is corrupt: {url[:100]}") from exc
    return img


async def download_images(urls: list[str]) -> list[Image.Image]:
    """Download multiple images concurrently with a shared HTTP client."""
    if not urls:
        return []
    async with httpx.AsyncClient() as client:
        return list(await asyncio.gather(*(fetch_image(client, url) for url in urls)))
