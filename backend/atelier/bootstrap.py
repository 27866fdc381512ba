"""Process bootstrap: builds every client once and wires the services.

Nothing below reaches for a module-level client; the API lifespan calls
build_services() and keeps the container on app.state.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from atelier.config import Settings
from atelier.repository import DesignRepository, InMemoryDesignRepository, SqlDesignRepository
from atelier.services.batch_upload import BatchUploader
from atelier.services.generate import GenerationPipeline, ImageGenerator
from atelier.services.image_resolution import ImageResolver
from atelier.services.lineage import LineageEngine
from atelier.services.mock_stubs import MockImageGenerator
from atelier.utils.r2 import R2Config, R2Storage
from atelier.utils.retry import RetryPolicy
from atelier.utils.signing import UrlSigner

logger = structlog.get_logger()


@dataclass
class Services:
    settings: Settings
    repo: DesignRepository
    storage: R2Storage
    signer: UrlSigner
    uploader: BatchUploader
    lineage: LineageEngine
    resolver: ImageResolver
    generator: ImageGenerator
    pipeline: GenerationPipeline

    async def close(self) -> None:
        if isinstance(self.repo, SqlDesignRepository):
            await self.repo.dispose()


def build_generator(settings: Settings) -> ImageGenerator:
    if settings.use_mock_generator or not settings.google_ai_api_key:
        return MockImageGenerator()
    from atelier.utils.gemini import GeminiImageGenerator

    return GeminiImageGenerator(
        settings.google_ai_api_key,
        settings.gemini_model,
        timeout_seconds=settings.generation_timeout_seconds,
    )


def build_services(settings: Settings, *, repo: DesignRepository | None = None) -> Services:
    config = R2Config.from_settings(settings)
    storage = R2Storage(config)
    # Signer shares the storage client: one connection pool per process
    signer = UrlSigner(config, client=storage.client)

    if repo is None:
        repo = (
            SqlDesignRepository.from_url(settings.database_url)
            if settings.use_database
            else InMemoryDesignRepository()
        )

    uploader = BatchUploader(
        storage,
        window_size=settings.upload_window_size,
        retry_policy=RetryPolicy(
            max_attempts=settings.upload_max_attempts,
            base_delay=settings.upload_backoff_base_seconds,
        ),
        chunk_delay=settings.upload_chunk_delay_seconds,
    )
    resolver = ImageResolver(signer)
    generator = build_generator(settings)

    logger.info(
        "services_built",
        repository=type(repo).__name__,
        storage_available=storage.available,
        generator=type(generator).__name__,
    )
    return Services(
        settings=settings,
        repo=repo,
        storage=storage,
        signer=signer,
        uploader=uploader,
        lineage=LineageEngine(repo),
        resolver=resolver,
        generator=generator,
        pipeline=GenerationPipeline(repo, generator, uploader, storage, resolver),
    )
