from __future__ import annotations

import asyncio
import logging
from pathlib import Path, PurePosixPath
import tempfile

from pxlcensor.domain.errors import DomainValidationError, FilterError, MediaTransferError
from pxlcensor.domain.ids import processed_path_for
from pxlcensor.domain.models import JobClaim, ProcessResult
from pxlcensor.domain.options import parse_processing_options
from pxlcensor.workers.filter import inference_scale_for_size
from pxlcensor.workers.handlers.deps import WorkerDeps

COMPONENT_ID = "worker.anonymize.process_claim"
logger = logging.getLogger("runtime")


async def process_claim(deps: WorkerDeps, *, claim: JobClaim) -> ProcessResult:
    """Download the original, run the filter on it and upload the result.

    Local files live in a per-claim temporary directory that is removed on
    every exit path.
    """
    image = await deps.repository.get_image(image_id=claim.image_id)
    if image is None:
        return ProcessResult(success=False, detail=f"image not found: {claim.image_id}", error_code="image_missing")

    try:
        options = parse_processing_options(claim.processing_options or image.processing_options)
    except DomainValidationError as exc:
        return ProcessResult(success=False, detail=str(exc), error_code="internal_error")

    processed_path = processed_path_for(image.original_path)
    suffix = PurePosixPath(image.original_path).suffix
    if deps.temp_dir is not None:
        deps.temp_dir.mkdir(parents=True, exist_ok=True)

    with tempfile.TemporaryDirectory(prefix=f"job-{claim.job_id}-", dir=deps.temp_dir) as workdir:
        input_path = Path(workdir) / f"input{suffix}"
        output_path = Path(workdir) / f"output{suffix}"

        try:
            payload = await deps.media.download(path=image.original_path)
        except MediaTransferError as exc:
            return ProcessResult(success=False, detail=str(exc), error_code="media_download_failed")
        await asyncio.to_thread(input_path.write_bytes, payload)

        scale = inference_scale_for_size(len(payload), force_720p=options.scale_720p)
        logger.info(
            "filter started",
            extra={
                "job_id": claim.job_id,
                "image_id": claim.image_id,
                "detail": f"method={options.method.value} scale={scale} bytes={len(payload)}",
            },
        )
        try:
            await deps.filter_runner.run(
                input_path=input_path,
                output_path=output_path,
                options=options,
                scale=scale,
            )
        except FilterError as exc:
            return ProcessResult(success=False, detail=str(exc), error_code="filter_failed")

        result = await asyncio.to_thread(output_path.read_bytes)
        try:
            uploaded_path = await deps.media.upload(path=processed_path, payload=result)
        except MediaTransferError as exc:
            return ProcessResult(success=False, detail=str(exc), error_code="media_upload_failed")

    return ProcessResult(success=True, detail="image anonymized", result_path=uploaded_path)
