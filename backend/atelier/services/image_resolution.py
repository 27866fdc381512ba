"""Read-time resolution of stored output URLs into displayable URLs.

Inline data URIs pass through untouched and never reach the signer. Our own
storage URLs (and bare keys) are re-signed; if that fails the stored URL is
returned as-is. Foreign http(s) URLs pass through.
"""

from __future__ import annotations

import asyncio

import structlog

from atelier.models.contracts import DesignOutput, ResolvedOutput
from atelier.utils.signing import DISPLAY_TTL_SECONDS, UrlSigner

logger = structlog.get_logger()


class ImageResolver:
    def __init__(self, signer: UrlSigner) -> None:
        self.signer = signer

    async def resolve_url(self, url: str, ttl_seconds: int = DISPLAY_TTL_SECONDS) -> tuple[str, bool, bool]:
        """Return (url, is_inline, is_signed)."""
        if url.startswith("data:"):
            return url, True, False

        if not self.signer.is_storage_url(url):
            return url, False, False

        key = self.signer.extract_key(url)
        if key is None:
            logger.warning("image_resolve_fallback", reason="key_extraction_failed", url=url[:200])
            return url, False, False

        signed = await self.signer.sign(key, ttl_seconds)
        if signed is None:
            logger.warning("image_resolve_fallback", reason="signing_failed", key=key)
            return url, False, False
        return signed, False, True

    async def resolve(self, output: DesignOutput, ttl_seconds: int = DISPLAY_TTL_SECONDS) -> ResolvedOutput:
        url, is_inline, is_signed = await self.resolve_url(output.output_image_url, ttl_seconds)
        return ResolvedOutput(
            **output.model_dump(exclude={"output_image_url"}),
            output_image_url=url,
            is_inline=is_inline,
            is_signed=is_signed,
        )

    async def resolve_all(
        self, outputs: list[DesignOutput], ttl_seconds: int = DISPLAY_TTL_SECONDS
    ) -> list[ResolvedOutput]:
        """Resolve every output concurrently; order matches the input."""
        return list(await asyncio.gather(*(self.resolve(o, ttl_seconds) for o in outputs)))
