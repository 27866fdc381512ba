"""Design generation pipeline.

Runs N image generations for a PENDING design, moves the successful payloads
into R2 through the batch uploader and records one output per kept image.

Degraded mode: when R2 is not configured, or an upload fails for a reason
other than a bad payload, the inline data URI is stored instead so the user
still gets their image. Payloads that are not decodable images are dropped.
"""

from __future__ import annotations

import asyncio
import time
from typing import Protocol

import structlog

from atelier.errors import DesignNotFoundError, GenerationError, InvalidPayloadError
from atelier.models.contracts import Design, DesignOutput, GenerationReport
from atelier.repository import DesignRepository
from atelier.services.batch_upload import BatchUploader
from atelier.services.image_resolution import ImageResolver
from atelier.utils.r2 import R2Storage, decode_data_uri

logger = structlog.get_logger()


class ImageGenerator(Protocol):
    model: str

    async def generate(self, prompt: str, reference_images: list[str]) -> str:
        """Return one generated image as a data URI; raise GenerationError on failure."""
        ...


class GenerationPipeline:
    def __init__(
        self,
        repo: DesignRepository,
        generator: ImageGenerator,
        uploader: BatchUploader,
        storage: R2Storage,
        resolver: ImageResolver | None = None,
    ) -> None:
        self.repo = repo
        self.generator = generator
        self.uploader = uploader
        self.storage = storage
        self.resolver = resolver

    async def _reference_urls(self, design: Design, extra: list[str]) -> list[str]:
        refs = [design.uploaded_image_url, *extra] if design.uploaded_image_url else list(extra)
        if self.resolver is None:
            return refs
        # Stored references are private objects; the model needs fetchable URLs
        resolved = await asyncio.gather(*(self.resolver.resolve_url(ref) for ref in refs))
        return [url for url, _, _ in resolved]

    async def _generate_one(self, prompt: str, refs: list[str], index: int) -> str | GenerationError:
        started = time.monotonic()
        try:
            payload = await self.generator.generate(prompt, refs)
        except GenerationError as exc:
            logger.warning(
                "generation_variation_failed",
                variation=index,
                error=exc.message,
                retryable=exc.retryable,
            )
            return exc
        logger.info(
            "generation_variation_done",
            variation=index,
            duration_ms=round((time.monotonic() - started) * 1000),
        )
        return payload

    async def run(
        self,
        design_id: str,
        variations: int = 2,
        reference_images: list[str] | None = None,
    ) -> GenerationReport:
        design = await self.repo.get_design(design_id)
        if design is None:
            raise DesignNotFoundError(design_id)
        design = await self.repo.update_status(design_id, "PROCESSING")
        logger.info("generation_start", design_id=design_id, variations=variations, model=self.generator.model)

        try:
            return await self._run(design, variations, reference_images or [])
        except Exception:
            logger.exception("generation_crashed", design_id=design_id)
            await self.repo.update_status(design_id, "FAILED")
            raise

    async def _run(self, design: Design, variations: int, extra_refs: list[str]) -> GenerationReport:
        refs = await self._reference_urls(design, extra_refs)
        results = await asyncio.gather(
            *(self._generate_one(design.input_prompt, refs, i) for i in range(variations))
        )

        errors: list[str | None] = [None] * variations
        candidates: list[tuple[int, str]] = []
        for index, result in enumerate(results):
            if isinstance(result, GenerationError):
                errors[index] = result.message
                continue
            try:
                decode_data_uri(result)
            except InvalidPayloadError as exc:
                logger.warning("generation_invalid_payload", variation=index, error=exc.message)
                errors[index] = exc.message
                continue
            candidates.append((index, result))

        upload = None
        stored_urls: list[str | None] = [None] * len(candidates)
        if candidates and self.storage.available:
            upload = await self.uploader.upload_all(
                [payload for _, payload in candidates], "variation", design_id=design.id
            )
            stored_urls = upload.urls
        elif candidates:
            logger.warning("generation_storage_unavailable", design_id=design.id, kept_inline=len(candidates))

        outputs: list[DesignOutput] = []
        any_inline = False
        for (index, payload), stored in zip(candidates, stored_urls, strict=True):
            storage = "r2" if stored else "inline"
            any_inline = any_inline or stored is None
            outputs.append(
                await self.repo.add_output(
                    design.id,
                    stored or payload,
                    variation_name=f"Variation {index + 1}",
                    generation_parameters={
                        "model": self.generator.model,
                        "prompt": design.input_prompt,
                        "variation_index": index,
                        "storage": storage,
                    },
                )
            )

        status = "COMPLETED" if outputs else "FAILED"
        design = await self.repo.update_status(design.id, status)
        logger.info(
            "generation_complete",
            design_id=design.id,
            status=status,
            outputs=len(outputs),
            failed=sum(1 for e in errors if e is not None),
        )
        return GenerationReport(
            design=design,
            outputs=outputs,
            upload=upload,
            generation_errors=errors,
            storage="inline" if any_inline else "r2",
        )
