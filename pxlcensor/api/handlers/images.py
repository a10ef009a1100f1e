from __future__ import annotations

import logging

from pxlcensor.api.handlers.deps import ApiDeps
from pxlcensor.api.schemas import (
    DeleteImageResponse,
    EventResponse,
    ImageDetailResponse,
    ImageListResponse,
    ImageSummaryResponse,
    ProcessImageResponse,
    ProcessingOptionsPayload,
    UploadInitResponse,
)
from pxlcensor.domain.errors import DomainInvariantError, DomainValidationError, ImageNotFoundError
from pxlcensor.domain.ids import new_original_path
from pxlcensor.domain.lifecycle import dedupe_key_for
from pxlcensor.domain.models import ImageStatus
from pxlcensor.domain.options import parse_processing_options

COMPONENT_ID = "api.images"
logger = logging.getLogger("runtime")

BUSY_STATUSES = {ImageStatus.QUEUED.value, ImageStatus.PROCESSING.value}


async def upload_init_handler(
    *,
    mime: str,
    bytes_size: int,
    sha256: str,
    processing_options: dict[str, object] | None,
    api_deps: ApiDeps,
) -> UploadInitResponse:
    """Register an image and hand out a signed PUT for its original.

    A fingerprint that is already known returns the existing image instead.
    """
    max_bytes = api_deps.media_settings.max_upload_bytes
    if bytes_size > max_bytes:
        raise DomainValidationError(f"file too large; max size: {max_bytes} bytes")
    options = parse_processing_options(processing_options)

    registration = await api_deps.repository.create_image(
        sha256=sha256,
        mime=mime,
        bytes_size=bytes_size,
        original_path=new_original_path(mime=mime),
        processing_options=options,
    )
    image = registration.image
    if not registration.created:
        return UploadInitResponse(
            image_id=image.image_id,
            status=image.status,
            duplicate=True,
            processed_path=image.processed_path,
        )

    capability = await api_deps.media.sign(
        method="PUT",
        path=image.original_path,
        ttl_seconds=api_deps.media_settings.sign_ttl_seconds,
    )
    logger.info("image registered", extra={"image_id": image.image_id, "path": image.original_path})
    return UploadInitResponse(
        image_id=image.image_id,
        status=image.status,
        duplicate=False,
        original_path=image.original_path,
        upload_url=api_deps.public_url(capability.path),
        upload_headers=capability.headers(),
    )


async def process_image_handler(*, image_id: str, pipeline: str, api_deps: ApiDeps) -> ProcessImageResponse:
    image = await api_deps.repository.get_image(image_id=image_id)
    if image is None:
        raise ImageNotFoundError(f"image not found: {image_id}")
    if image.status in BUSY_STATUSES:
        raise DomainInvariantError("image is already processing")
    if image.status == ImageStatus.DONE.value:
        raise DomainInvariantError("image is already processed")

    result = await api_deps.repository.enqueue(
        image_id=image_id,
        kind=pipeline,
        dedupe_key=dedupe_key_for(sha256=image.sha256, kind=pipeline),
        options=image.processing_options,
    )
    return ProcessImageResponse(job_id=result.job_id, status=result.status, duplicate=result.duplicate)


async def list_images_handler(
    *,
    status: str | None,
    page: int,
    page_size: int,
    api_deps: ApiDeps,
) -> ImageListResponse:
    result = await api_deps.repository.list_images(status=status, page=page, page_size=page_size)
    return ImageListResponse(
        images=[
            ImageSummaryResponse(
                image_id=image.image_id,
                mime=image.mime,
                bytes=image.bytes,
                status=image.status,
                processed_path=image.processed_path,
                processed_url=api_deps.public_url(image.processed_path) if image.processed_path else None,
                created_at=image.created_at,
                updated_at=image.updated_at,
            )
            for image in result.images
        ],
        total=result.total,
        page=result.page,
        page_size=result.page_size,
    )


async def get_image_handler(*, image_id: str, api_deps: ApiDeps) -> ImageDetailResponse:
    image = await api_deps.repository.get_image(image_id=image_id)
    if image is None:
        raise ImageNotFoundError(f"image not found: {image_id}")
    events = await api_deps.repository.list_events(image_id=image_id)
    capability = await api_deps.media.sign(
        method="GET",
        path=image.original_path,
        ttl_seconds=api_deps.media_settings.detail_ttl_seconds,
    )
    return ImageDetailResponse(
        image_id=image.image_id,
        sha256=image.sha256,
        mime=image.mime,
        bytes=image.bytes,
        status=image.status,
        original_path=image.original_path,
        processed_path=image.processed_path,
        processing_options=ProcessingOptionsPayload(**parse_processing_options(image.processing_options).to_json()),
        original_url=api_deps.public_url(capability.path),
        original_headers=capability.headers(),
        processed_url=api_deps.public_url(image.processed_path) if image.processed_path else None,
        events=[EventResponse(type=event.type, at=event.at, data=event.data) for event in events],
        created_at=image.created_at,
        updated_at=image.updated_at,
    )


async def delete_image_handler(*, image_id: str, api_deps: ApiDeps) -> DeleteImageResponse:
    deleted = await api_deps.repository.delete_image(image_id=image_id)
    if deleted is None:
        raise ImageNotFoundError(f"image not found: {image_id}")

    # Rows are gone already; files are cleanup only.
    files_deleted = 0
    for path in (deleted.original_path, deleted.processed_path):
        if path and await api_deps.media.delete(path=path):
            files_deleted += 1
    logger.info(
        "image deleted",
        extra={"image_id": image_id, "detail": f"files_deleted={files_deleted}"},
    )
    return DeleteImageResponse(image_id=image_id, deleted=True, files_deleted=files_deleted)
