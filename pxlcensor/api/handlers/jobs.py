from __future__ import annotations

from pxlcensor.api.handlers.deps import ApiDeps
from pxlcensor.api.schemas import JobResponse, MetricsResponse, QueueStatsResponse

COMPONENT_ID = "api.jobs"


async def get_job_handler(*, job_id: int, api_deps: ApiDeps) -> JobResponse | None:
    job = await api_deps.repository.get_job(job_id=job_id)
    if job is None:
        return None
    return JobResponse(
        job_id=job.job_id,
        image_id=job.image_id,
        kind=job.kind,
        status=job.status,
        dedupe_key=job.dedupe_key,
        run_at=job.run_at,
        attempts=job.attempts,
        claimed_by=job.claimed_by,
        claimed_at=job.claimed_at,
        error_log=job.error_log,
        processing_options=job.processing_options,
        created_at=job.created_at,
        updated_at=job.updated_at,
    )


async def queue_stats_handler(*, api_deps: ApiDeps, window_hours: int = 24) -> QueueStatsResponse:
    stats = await api_deps.repository.queue_stats(window_hours=window_hours)
    return QueueStatsResponse(counts=stats.counts, total=stats.total, window_hours=stats.window_hours)


async def metrics_handler(*, api_deps: ApiDeps) -> MetricsResponse:
    metrics = await api_deps.repository.metrics()
    return MetricsResponse(
        total_images=metrics.total_images,
        processed_images=metrics.processed_images,
        queued_jobs=metrics.queued_jobs,
        processing_jobs=metrics.processing_jobs,
        failed_last_hour=metrics.failed_last_hour,
    )
