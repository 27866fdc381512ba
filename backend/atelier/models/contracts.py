"""Atelier contract models.

Everything that crosses a boundary (HTTP bodies, repository results, service
results) is one of these models. Core services only ever see validated,
typed instances; loose JSON stops at the API layer.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

DesignStatus = Literal["PENDING", "PROCESSING", "COMPLETED", "FAILED"]
ViewType = Literal["main", "detail", "variation"]
UploadStatus = Literal["pending", "uploading", "success", "error"]
StorageErrorKind = Literal["storage_unavailable", "upload_failed", "invalid_payload"]

# === Design lineage ===


class Preferences(BaseModel):
    """Room preferences captured with a root design."""

    room_type: str = Field(min_length=1, max_length=100)
    size: str = Field(min_length=1, max_length=50)
    style_preference: str = Field(min_length=1, max_length=100)
    budget: Literal["budget", "mid_range", "luxury"]
    color_scheme: str | None = None
    material_preferences: list[str] = []
    other_requirements: str | None = Field(default=None, max_length=2000)


class Design(BaseModel):
    """One node of a user's generation forest."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    owner_id: str
    parent_id: str | None = None
    generation_number: int = Field(ge=1)
    status: DesignStatus = "PENDING"
    input_prompt: str
    uploaded_image_url: str | None = None
    ai_model_used: str | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_root(self) -> bool:
        return self.parent_id is None


class DesignOutput(BaseModel):
    """One generated image belonging to a design. Never mutated."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    design_id: str
    output_image_url: str  # data: URI, object-store URL, or bare key
    variation_name: str | None = None
    generation_parameters: dict[str, Any] | None = None
    created_at: datetime


class ChainStats(BaseModel):
    total_nodes: int
    root_id: str | None
    latest_id: str | None
    generation_numbers: list[int] = []
    created_dates: list[datetime] = []


class ResolvedOutput(DesignOutput):
    """A DesignOutput whose URL has been made displayable at read time."""

    is_inline: bool = False
    is_signed: bool = False


# === Batch upload ===


class UploadProgress(BaseModel):
    index: int
    status: UploadStatus = "pending"
    progress: int = Field(ge=0, le=100, default=0)
    url: str | None = None
    key: str | None = None
    error: str | None = None


class BatchProgress(BaseModel):
    """Snapshot handed to progress callbacks and streamed to clients."""

    items: list[UploadProgress]
    overall_progress: int = Field(ge=0, le=100, default=0)
    completed_chunks: int = 0
    total_chunks: int = 0


class BatchUploadResult(BaseModel):
    """Positionally aligned with the submitted payload list (no compaction)."""

    success: bool
    urls: list[str | None] = []
    keys: list[str | None] = []
    errors: list[str | None] = []
    failed_indices: list[int] = []


# === API requests ===


class CreateDesignRequest(BaseModel):
    preferences: Preferences
    input_prompt: str | None = Field(default=None, max_length=4000)
    uploaded_image_url: str | None = None


class RegenerateRequest(BaseModel):
    parent_design_id: str = Field(min_length=1)
    input_prompt: str = Field(min_length=1, max_length=4000)
    ai_model_used: str = Field(min_length=1, max_length=100)
    uploaded_image_url: str | None = None


class GenerateRequest(BaseModel):
    variations: int = Field(default=2, ge=1, le=8)
    reference_images: list[str] = Field(default=[], max_length=4)


class UploadImageRequest(BaseModel):
    base64_data: str = Field(min_length=1)
    view_type: ViewType = "variation"


class BatchUploadRequest(BaseModel):
    # Entries are not validated here: a malformed payload must be reported
    # at its own index, not reject the whole batch.
    images: list[str] = Field(min_length=1, max_length=24)
    view_type: ViewType = "variation"


class AttachOutputsRequest(BatchUploadRequest):
    variation_names: list[str] | None = None


class SignedUrlRequest(BaseModel):
    image_url: str = Field(min_length=1)
    expires_in: int | None = Field(default=None, ge=60, le=7 * 24 * 3600)


# === API responses ===


class ErrorResponse(BaseModel):
    error: str
    message: str
    retryable: bool


class UploadImageResponse(BaseModel):
    success: bool = True
    url: str
    key: str


class DesignResponse(BaseModel):
    design: Design
    preferences: Preferences | None = None
    outputs: list[ResolvedOutput] = []


class RegenerateResponse(BaseModel):
    design: Design
    user_total_designs: int


class ChainResponse(BaseModel):
    chain: list[Design]
    stats: ChainStats


class ChildrenResponse(BaseModel):
    design_id: str
    has_regenerations: bool
    children: list[Design]


class GenerationReport(BaseModel):
    design: Design
    outputs: list[DesignOutput] = []
    upload: BatchUploadResult | None = None
    generation_errors: list[str | None] = []
    storage: Literal["r2", "inline"] = "r2"


class AttachOutputsResponse(BaseModel):
    outputs: list[DesignOutput]
    upload: BatchUploadResult


class DownloadResponse(BaseModel):
    design: Design
    outputs: list[ResolvedOutput]
    expires_in: int


class SignedUrlResponse(BaseModel):
    success: bool = True
    signed_url: str
    expires_in: int
