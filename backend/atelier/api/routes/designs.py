"""Design endpoints: roots, regenerations, chains, generation and downloads.

Every route resolves the caller from X-User-ID. Lookups 404 before ownership
is checked; a design owned by someone else is a 403, never a 404.
"""

from __future__ import annotations

import httpx
import structlog
from fastapi import APIRouter, Depends, Response

from atelier.api.deps import error_response, get_current_user_id, get_services
from atelier.bootstrap import Services
from atelier.errors import (
    DesignNotFoundError,
    ForbiddenError,
    HasRegenerationsError,
    OutputNotFoundError,
    ParentNotFoundError,
)
from atelier.models.contracts import (
    AttachOutputsRequest,
    AttachOutputsResponse,
    ChainResponse,
    ChildrenResponse,
    CreateDesignRequest,
    Design,
    DesignResponse,
    DownloadResponse,
    ErrorResponse,
    GenerateRequest,
    GenerationReport,
    Preferences,
    RegenerateRequest,
    RegenerateResponse,
)
from atelier.services.lineage import chain_stats
from atelier.utils.http import ImageFetchError, fetch_image_bytes
from atelier.utils.r2 import decode_data_uri

logger = structlog.get_logger()

router = APIRouter(tags=["designs"])

_OWNED = {
    401: {"model": ErrorResponse},
    403: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
}

IMAGE_CACHE_CONTROL = "private, max-age=3600"


def _describe(preferences: Preferences) -> str:
    """Fallback prompt when the client sends preferences only."""
    parts = [
        f"A {preferences.style_preference} {preferences.room_type}",
        f"about {preferences.size}",
        f"on a {preferences.budget.replace('_', '-')} budget",
    ]
    if preferences.color_scheme:
        parts.append(f"in a {preferences.color_scheme} colour scheme")
    if preferences.material_preferences:
        parts.append("using " + ", ".join(preferences.material_preferences))
    prompt = ", ".join(parts) + "."
    if preferences.other_requirements:
        prompt += f" {preferences.other_requirements}"
    return prompt


async def _owned_design(services: Services, design_id: str, user_id: str) -> Design:
    design = await services.repo.get_design(design_id)
    if design is None:
        raise DesignNotFoundError(design_id)
    if design.owner_id != user_id:
        logger.warning("design_forbidden", design_id=design_id, user_id=user_id)
        raise ForbiddenError("You do not own this design")
    return design


@router.post(
    "/designs",
    status_code=201,
    response_model=DesignResponse,
    responses={401: {"model": ErrorResponse}},
)
async def create_design(
    body: CreateDesignRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> DesignResponse:
    """Create a root design (generation 1) with its preferences."""
    prompt = body.input_prompt or _describe(body.preferences)
    design = await services.lineage.create_root(
        user_id,
        prompt,
        uploaded_image_url=body.uploaded_image_url,
        preferences=body.preferences,
    )
    return DesignResponse(design=design, preferences=body.preferences)


@router.post(
    "/designs/regenerate",
    status_code=201,
    response_model=RegenerateResponse,
    responses=_OWNED,
)
async def regenerate_design(
    body: RegenerateRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> RegenerateResponse:
    """Create a child of an existing design, one generation deeper."""
    parent = await services.repo.get_design(body.parent_design_id)
    if parent is None:
        raise ParentNotFoundError(body.parent_design_id)
    if parent.owner_id != user_id:
        logger.warning("regenerate_forbidden", parent_id=parent.id, user_id=user_id)
        raise ForbiddenError("You do not own the parent design")

    design = await services.lineage.create_regeneration(
        parent.id,
        user_id,
        body.input_prompt,
        body.ai_model_used,
        uploaded_image_url=body.uploaded_image_url,
    )
    total = await services.repo.count_designs_for_owner(user_id)
    return RegenerateResponse(design=design, user_total_designs=total)


@router.get("/designs/{design_id}", response_model=DesignResponse, responses=_OWNED)
async def get_design(
    design_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> DesignResponse:
    design = await _owned_design(services, design_id, user_id)
    outputs = await services.repo.list_outputs(design.id)
    return DesignResponse(
        design=design,
        preferences=await services.repo.get_preferences(design.id),
        outputs=await services.resolver.resolve_all(outputs),
    )


@router.delete(
    "/designs/{design_id}",
    status_code=204,
    responses={**_OWNED, 409: {"model": ErrorResponse}},
)
async def delete_design(
    design_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> Response:
    """Delete a leaf design, its outputs and their stored objects."""
    design = await _owned_design(services, design_id, user_id)
    if await services.lineage.has_children(design.id):
        raise HasRegenerationsError(design.id)

    outputs = await services.repo.list_outputs(design.id)
    await services.repo.delete_design(design.id)

    # Objects outlive their rows only on failure; cleanup is best effort
    prefix = f"designs/{design.id}/"
    removed = await services.storage.delete_prefix(prefix)
    for output in outputs:
        if not services.signer.is_storage_url(output.output_image_url):
            continue
        key = services.signer.extract_key(output.output_image_url)
        if key and not key.startswith(prefix):
            removed += int(await services.storage.delete(key))

    logger.info("design_deleted", design_id=design.id, objects_removed=removed)
    return Response(status_code=204)


@router.get("/designs/{design_id}/chain", response_model=ChainResponse, responses=_OWNED)
async def get_chain(
    design_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> ChainResponse:
    """Full regeneration tree containing this design, root first."""
    design = await _owned_design(services, design_id, user_id)
    chain = await services.lineage.get_chain(design.id)
    return ChainResponse(chain=chain, stats=chain_stats(chain))


@router.get("/designs/{design_id}/children", response_model=ChildrenResponse, responses=_OWNED)
async def get_children(
    design_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> ChildrenResponse:
    design = await _owned_design(services, design_id, user_id)
    children = await services.lineage.get_direct_children(design.id)
    return ChildrenResponse(
        design_id=design.id, has_regenerations=bool(children), children=children
    )


@router.post(
    "/designs/{design_id}/generate",
    response_model=GenerationReport,
    responses={**_OWNED, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def generate_design(
    design_id: str,
    body: GenerateRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Run the AI generation for a PENDING design and store its outputs."""
    design = await _owned_design(services, design_id, user_id)
    max_variations = services.settings.max_variations
    if body.variations > max_variations:
        return error_response(
            422,
            "validation_error",
            f"variations must be at most {max_variations}",
        )
    return await services.pipeline.run(
        design.id, body.variations, reference_images=body.reference_images
    )


@router.post(
    "/designs/{design_id}/outputs",
    status_code=201,
    response_model=AttachOutputsResponse,
    responses={**_OWNED, 503: {"model": ErrorResponse}},
)
async def attach_outputs(
    design_id: str,
    body: AttachOutputsRequest,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Upload data-URI images and record each stored one as an output."""
    design = await _owned_design(services, design_id, user_id)
    if not services.storage.available:
        return error_response(503, "storage_unavailable", "Image storage is not configured")

    upload = await services.uploader.upload_all(
        body.images, body.view_type, design_id=design.id
    )
    names = body.variation_names or []
    outputs = []
    for index, url in enumerate(upload.urls):
        if url is None:
            continue
        name = names[index] if index < len(names) else f"Upload {index + 1}"
        outputs.append(
            await services.repo.add_output(
                design.id,
                url,
                variation_name=name,
                generation_parameters={"source": "upload", "view_type": body.view_type},
            )
        )
    logger.info(
        "outputs_attached",
        design_id=design.id,
        stored=len(outputs),
        failed_indices=upload.failed_indices,
    )
    return AttachOutputsResponse(outputs=outputs, upload=upload)


@router.get("/designs/{design_id}/download", response_model=DownloadResponse, responses=_OWNED)
async def download_design(
    design_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
) -> DownloadResponse:
    """Every output re-signed with the longer download window."""
    design = await _owned_design(services, design_id, user_id)
    ttl = services.settings.download_url_expiry_seconds
    outputs = await services.repo.list_outputs(design.id)
    resolved = await services.resolver.resolve_all(outputs, ttl)
    logger.info(
        "design_download_prepared",
        design_id=design.id,
        outputs=len(resolved),
        signed=sum(1 for o in resolved if o.is_signed),
    )
    return DownloadResponse(design=design, outputs=resolved, expires_in=ttl)


@router.get(
    "/designs/{design_id}/image/{output_id}",
    response_class=Response,
    responses={**_OWNED, 502: {"model": ErrorResponse}},
)
async def proxy_output_image(
    design_id: str,
    output_id: str,
    user_id: str = Depends(get_current_user_id),
    services: Services = Depends(get_services),
):
    """Stream one output's bytes through the API (no client-side signing needed)."""
    design = await _owned_design(services, design_id, user_id)
    output = await services.repo.get_output(output_id)
    if output is None or output.design_id != design.id:
        raise OutputNotFoundError(output_id)

    if output.output_image_url.startswith("data:"):
        decoded = decode_data_uri(output.output_image_url)
        return Response(
            content=decoded.data,
            media_type=decoded.mime_type,
            headers={"Cache-Control": IMAGE_CACHE_CONTROL},
        )

    url, _, _ = await services.resolver.resolve_url(output.output_image_url)
    try:
        async with httpx.AsyncClient() as client:
            fetched = await fetch_image_bytes(client, url)
    except ImageFetchError as exc:
        logger.warning("image_proxy_failed", output_id=output_id, error=str(exc))
        return error_response(502, "image_fetch_failed", str(exc), retryable=exc.retryable)

    return Response(
        content=fetched.content,
        media_type=fetched.content_type,
        headers={"Cache-Control": IMAGE_CACHE_CONTROL},
    )