from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum

from pxlcensor.domain.error_taxonomy import ErrorCode


# Canonical job/image states.
#
# IMPORTANT:
# - Keep these enums synchronized with the status CHECK constraints in
#   db/migrations/000001_bootstrap.up.sql.
# - Keep ALLOWED_JOB_TRANSITIONS in pxlcensor/domain/lifecycle.py in sync.
class JobStatus(StrEnum):
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class ImageStatus(StrEnum):
    UPLOADED = "uploaded"
    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class FailOutcome(StrEnum):
    RETRY = "retry"
    FAILED = "failed"


class ReplaceMethod(StrEnum):
    MOSAIC = "mosaic"
    BLUR = "blur"
    SOLID = "solid"


@dataclass(frozen=True)
class ProcessingOptions:
    method: ReplaceMethod = ReplaceMethod.MOSAIC
    mosaic_size: int = 20
    scale_720p: bool = False

    def to_json(self) -> dict[str, object]:
        return {
            "method": self.method.value,
            "mosaic_size": self.mosaic_size,
            "scale_720p": self.scale_720p,
        }


@dataclass(frozen=True)
class JobClaim:
    job_id: int
    image_id: str
    kind: str
    attempts: int
    processing_options: dict[str, object] = field(default_factory=dict)
    claimed_at: datetime | None = None


@dataclass(frozen=True)
class ProcessResult:
    success: bool
    detail: str = ""
    result_path: str | None = None
    error_code: ErrorCode | None = None


@dataclass(frozen=True)
class EnqueueResult:
    job_id: int
    status: str
    duplicate: bool


@dataclass(frozen=True)
class JobSnapshot:
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


@dataclass(frozen=True)
class ImageSnapshot:
    image_id: str
    sha256: str
    mime: str
    bytes: int
    original_path: str
    processed_path: str | None
    status: str
    processing_options: dict[str, object]
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class ImageRegistration:
    image: ImageSnapshot
    created: bool


@dataclass(frozen=True)
class AuditEvent:
    image_id: str
    type: str
    at: datetime
    data: dict[str, object]


@dataclass(frozen=True)
class QueueStats:
    counts: dict[str, int]
    total: int
    window_hours: int


@dataclass(frozen=True)
class ImagePage:
    images: list[ImageSnapshot]
    total: int
    page: int
    page_size: int


@dataclass(frozen=True)
class ServiceMetrics:
    total_images: int
    processed_images: int
    queued_jobs: int
    processing_jobs: int
    failed_last_hour: int
