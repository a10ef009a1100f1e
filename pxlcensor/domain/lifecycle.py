from __future__ import annotations

from pxlcensor.domain.errors import DomainValidationError
from pxlcensor.domain.models import ImageStatus, JobStatus

DEFAULT_PIPELINE = "deface_boxes"
DEFAULT_MAX_ATTEMPTS = 3
RETRY_STEP_SECONDS = 10
STALE_CLAIM_ERROR = "claim went stale"
MAX_PAGE_SIZE = 100

ALLOWED_JOB_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.QUEUED: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.DONE, JobStatus.QUEUED, JobStatus.FAILED},
    JobStatus.DONE: set(),
    JobStatus.FAILED: set(),
}

# Image status mirrored from the latest job of the default pipeline.
IMAGE_STATUS_FOR_JOB: dict[JobStatus, ImageStatus] = {
    JobStatus.QUEUED: ImageStatus.QUEUED,
    JobStatus.PROCESSING: ImageStatus.PROCESSING,
    JobStatus.DONE: ImageStatus.DONE,
    JobStatus.FAILED: ImageStatus.FAILED,
}


def retry_delay_seconds(attempts: int) -> int:
    """Linear backoff: the n-th failed attempt waits n * 10 seconds."""
    return max(attempts, 0) * RETRY_STEP_SECONDS


def dedupe_key_for(*, sha256: str, kind: str) -> str:
    return f"{sha256}:{kind}"


def mirrors_image_status(kind: str) -> bool:
    return kind == DEFAULT_PIPELINE


def is_allowed_transition(from_status: str, to_status: str) -> bool:
    try:
        source = JobStatus(from_status)
        target = JobStatus(to_status)
    except ValueError:
        return False
    return target in ALLOWED_JOB_TRANSITIONS[source]


def validate_image_page(*, status: str | None, page: int, page_size: int) -> None:
    if status is not None and status not in {item.value for item in ImageStatus}:
        raise DomainValidationError(f"unknown image status: {status}")
    if page < 1:
        raise DomainValidationError("page must be at least 1")
    if not 1 <= page_size <= MAX_PAGE_SIZE:
        raise DomainValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
