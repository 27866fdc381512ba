"""Image ingestion endpoints: single and batch uploads, signing, serving.

Uploads that happen before a design exists land under a temporary prefix;
attaching them to a design goes through /designs/{id}/outputs instead.
"""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator

import structlog
from fastapi import APIRouter, Depends, Response
from fastapi.responses import StreamingResponse

from atelier.api.deps import error_response, get_current_user_id, get_services
from atelier.bootstrap import Services
from atelier.errors import ForbiddenError
from atelier.models.contracts import (
    BatchProgress,
    BatchUploadRequest,
    BatchUploadResult,
    ErrorResponse,
    SignedUrlRequest,
    SignedUrlResponse,
    UploadImageRequest,
    UploadImageResponse,
)
from atelier.utils.r2 import random_suffix

logger = structlog.get_logger()

router = APIRouter(tags=["images"])

_UNAVAILABLE = (503, "storage_unavailable", "Image storage is not configured")

IMAGE_CACHE_CONTROL = "private, max-age=3600"

_UPLOAD_ERRORS = {
    "invalid_payload": (422, False),
    "upload_failed": (502, True),
    "storage_unavailable": (503, False),
}


async def _check_key_owner(services: Services, key: str, user_id: str) -> None:
    """Keys under designs/<id>/ belong to that design's owner.

    Anything outside that layout was not written by this service and is
    refused. temp- prefixes predate a design and have no owner to check.
    """
    parts = key.split("/")
    if len(parts) < 3 or parts[0] != "designs" or not parts[1] or not parts[-1]:
        logger.warning("image_key_outside_designs", key=key, user_id=user_id)
        raise ForbiddenError("Image key is outside the designs prefix")
    design = await services.repo.get_design(parts[1])
    if design is not None and design.owner_id != user_id:
        logger.warning("image_forbidden", key=key, user_id=user_id)
        raise ForbiddenError("You do not own this image")


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


@router.post(
    "/images/upload",
    status_code=201,
    response_model=UploadImageResponse,
    responses={422: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def upload_image(
    body: UploadImageRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Store one data-URI image and return its URL and key."""
    if not services.storage.available:
        return error_response(*_UNAVAILABLE)

    result = await services.storage.upload_data_uri(
        body.base64_data, f"temp-{random_suffix()}", body.view_type
    )
    if not result.success:
        status, retryable = _UPLOAD_ERRORS.get(result.error_kind or "upload_failed", (502, True))
        return error_response(
            status, result.error_kind or "upload_failed", result.error or "Upload failed", retryable=retryable
        )
    logger.info("image_uploaded", key=result.key, user_id=user_id)
    return UploadImageResponse(url=result.url, key=result.key)


@router.post(
    "/images/batch",
    response_model=BatchUploadResult,
    responses={503: {"model": ErrorResponse}},
)
async def upload_batch(
    body: BatchUploadRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Upload every image; per-index failures are reported, never rolled back."""
    if not services.storage.available:
        return error_response(*_UNAVAILABLE)
    return await services.uploader.upload_all(body.images, body.view_type)


@router.post(
    "/images/batch/stream",
    response_class=StreamingResponse,
    responses={503: {"model": ErrorResponse}},
)
async def upload_batch_stream(
    body: BatchUploadRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Same as /images/batch, streaming progress snapshots as server-sent events.

    Emits one `progress` event per item transition and chunk boundary, then a
    final `complete` event carrying the BatchUploadResult.
    """
    if not services.storage.available:
        return error_response(*_UNAVAILABLE)

    async def event_stream() -> AsyncIterator[str]:
        queue: asyncio.Queue[BatchProgress | None] = asyncio.Queue()
        task = asyncio.create_task(
            services.uploader.upload_all(
                body.images, body.view_type, on_progress=queue.put_nowait
            )
        )
        # Runs after the task's last progress callback, so it is always dequeued last
        task.add_done_callback(lambda _: queue.put_nowait(None))
        try:
            while (snapshot := await queue.get()) is not None:
                yield _sse({"event": "progress", "progress": snapshot.model_dump()})
            result = await task
            yield _sse({"event": "complete", "result": result.model_dump()})
        except Exception as exc:
            logger.exception("batch_stream_failed")
            yield _sse({"event": "error", "error": "internal_error", "message": str(exc)})
        finally:
            if not task.done():
                # Client went away mid-stream
                task.cancel()

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@router.post(
    "/images/signed-url",
    response_model=SignedUrlResponse,
    responses={400: {"model": ErrorResponse}, 403: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def create_signed_url(
    body: SignedUrlRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Sign one of our stored URLs (or a bare key) for temporary access."""
    signer = services.signer
    key = signer.extract_key(body.image_url) if signer.is_storage_url(body.image_url) else None
    if key is None:
        return error_response(400, "not_storage_url", "URL does not point at our image storage")
    await _check_key_owner(services, key, user_id)

    if not signer.available:
        return error_response(503, "signing_unavailable", "URL signing is not configured")
    ttl = body.expires_in or services.settings.presigned_url_expiry_seconds
    signed = await signer.sign(key, ttl)
    if signed is None:
        return error_response(503, "signing_failed", "Could not sign URL", retryable=True)
    return SignedUrlResponse(signed_url=signed, expires_in=ttl)


@router.get(
    "/images/{key:path}",
    response_class=Response,
    responses={403: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
)
async def serve_image(
    key: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Serve stored object bytes directly from R2."""
    if not services.storage.available:
        return error_response(*_UNAVAILABLE)
    await _check_key_owner(services, key, user_id)

    blob = await services.storage.get(key)
    if blob is None:
        return error_response(404, "image_not_found", f"Image {key} not found")
    return Response(
        content=blob.data,
        media_type=blob.content_type,
        headers={"Cache-Control": IMAGE_CACHE_CONTROL},
    )
