from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

SHA256_PATTERN = r"^[0-9a-f]{64}$"
PIPELINE_PATTERN = r"^[a-z][a-z0-9_]{0,63}$"

ImageMime = Literal["image/jpeg", "image/png", "image/webp"]


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    claims_total: int
    idle_ticks_total: int
    errors_total: int
    reclaimed_total: int
    subscribe_errors_total: int
    in_flight: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str
    database: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_metrics: WorkerMetrics


class ProcessingOptionsPayload(BaseModel):
    method: str = "mosaic"
    mosaic_size: int = 20
    scale_720p: bool = False


class UploadInitRequest(BaseModel):
    filename: str | None = Field(default=None, max_length=256)
    mime: ImageMime
    bytes: int = Field(gt=0)
    sha256: str = Field(pattern=SHA256_PATTERN)
    processing_options: dict[str, object] | None = None


class UploadInitResponse(BaseModel):
    image_id: str
    status: str
    duplicate: bool
    original_path: str | None = None
    processed_path: str | None = None
    upload_url: str | None = None
    upload_headers: dict[str, str] | None = None


class ProcessImageRequest(BaseModel):
    pipeline: str = Field(default="deface_boxes", pattern=PIPELINE_PATTERN)


class ProcessImageResponse(BaseModel):
    job_id: int
    status: str
    duplicate: bool


class EventResponse(BaseModel):
    type: str
    at: datetime
    data: dict[str, object]


class ImageDetailResponse(BaseModel):
    image_id: str
    sha256: str
    mime: str
    bytes: int
    status: str
    original_path: str
    processed_path: str | None
    processing_options: ProcessingOptionsPayload
    original_url: str | None
    original_headers: dict[str, str] | None
    processed_url: str | None
    events: list[EventResponse]
    created_at: datetime | None = None
    updated_at: datetime | None = None


class DeleteImageResponse(BaseModel):
    image_id: str
    deleted: bool
    files_deleted: int


class JobResponse(BaseModel):
    job_id: int
    image_id: str
    kind: str
    status: str
    dedupe_key: str | None
    run_at: datetime
    attempts: int
    claimed_by: str | None
    claimed_at: datetime | None
    error_log: str | None
    processing_options: dict[str, object]
    created_at: datetime | None = None
    updated_at: datetime | None = None


class QueueStatsResponse(BaseModel):
    counts: dict[str, int]
    total: int
    window_hours: int


class ImageSummaryResponse(BaseModel):
    image_id: str
    mime: str
    bytes: int
    status: str
    processed_path: str | None
    processed_url: str | None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class ImageListResponse(BaseModel):
    images: list[ImageSummaryResponse]
    total: int
    page: int
    page_size: int


class MetricsResponse(BaseModel):
    total_images: int
    processed_images: int
    queued_jobs: int
    processing_jobs: int
    failed_last_hour: int
