from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable
import logging

from fastapi import FastAPI, HTTPException, Query, Response

from pxlcensor.api.handlers.deps import ApiDeps
from pxlcensor.api.handlers.images import (
    delete_image_handler,
    get_image_handler,
    list_images_handler,
    process_image_handler,
    upload_init_handler,
)
from pxlcensor.api.handlers.jobs import get_job_handler, metrics_handler, queue_stats_handler
from pxlcensor.api.schemas import (
    DeleteImageResponse,
    ErrorResponse,
    HealthResponse,
    ImageDetailResponse,
    ImageListResponse,
    JobResponse,
    MetricsResponse,
    ProcessImageRequest,
    ProcessImageResponse,
    QueueStatsResponse,
    ReadyResponse,
    UploadInitRequest,
    UploadInitResponse,
    WorkerMetrics,
)
from pxlcensor.domain.contracts import JobNotifier
from pxlcensor.domain.errors import DomainInvariantError, DomainValidationError, ImageNotFoundError, MediaTransferError
from pxlcensor.domain.lifecycle import MAX_PAGE_SIZE
from pxlcensor.workers.loop import WorkerLoop
from pxlcensor.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)


def build_app(
    role: str,
    run_id: str,
    worker_loop: WorkerLoop | None = None,
    notifier: JobNotifier | None = None,
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_state: WorkerRuntimeState | None = None
    worker_task: asyncio.Task[None] | None = None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        nonlocal worker_task, worker_state
        del app
        stop_event: asyncio.Event | None = None

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if worker_loop is not None:
            if notifier is None:
                raise RuntimeError("worker loop requires a job notifier")
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            worker_state = WorkerRuntimeState()
            stop_event = asyncio.Event()
            worker_task = asyncio.create_task(
                run_worker_until_stopped(
                    worker_loop=worker_loop,
                    notifier=notifier,
                    role=role,
                    run_id=run_id,
                    stop_event=stop_event,
                    settings=settings,
                    logger=logger,
                    state=worker_state,
                )
            )

        yield

        if stop_event is not None and worker_task is not None:
            stop_event.set()
            await worker_task

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="pxlcensor", version="0.1.0", lifespan=lifespan)

    def _require_deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    @app.get("/health", response_model=HealthResponse, responses={503: {"model": HealthResponse}}, tags=["System"])
    async def health(response: Response) -> HealthResponse:
        if api_deps is None:
            return HealthResponse(status="ok", role=role, mode=_mode(api_deps), database="absent")
        try:
            await api_deps.repository.ping()
        except Exception as exc:
            logger.warning(
                "database unreachable",
                extra={"role": role, "service": role, "run_id": run_id, "detail": f"{type(exc).__name__}: {exc}"},
            )
            response.status_code = 503
            return HealthResponse(status="error", role=role, mode=_mode(api_deps), database="disconnected")
        return HealthResponse(status="ok", role=role, mode=_mode(api_deps), database="connected")

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = worker_loop is not None
        worker_loop_ready = True
        if worker_loop_enabled:
            worker_loop_ready = (
                worker_state is not None
                and worker_state.started
                and worker_task is not None
                and not worker_task.done()
            )
        state = worker_state or WorkerRuntimeState()

        return ReadyResponse(
            status="ready",
            role=role,
            mode=_mode(api_deps),
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_metrics=WorkerMetrics(
                started=state.started,
                stopped=state.stopped,
                ticks_total=state.ticks_total,
                claims_total=state.claims_total,
                idle_ticks_total=state.idle_ticks_total,
                errors_total=state.errors_total,
                reclaimed_total=state.reclaimed_total,
                subscribe_errors_total=state.subscribe_errors_total,
                in_flight=worker_loop.in_flight_count if worker_loop is not None else 0,
            ),
        )

    @app.post(
        "/images",
        response_model=UploadInitResponse,
        responses={400: {"model": ErrorResponse}, 502: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Images"],
    )
    async def upload_init(request: UploadInitRequest) -> UploadInitResponse:
        deps = _require_deps()
        try:
            return await upload_init_handler(
                mime=request.mime,
                bytes_size=request.bytes,
                sha256=request.sha256,
                processing_options=request.processing_options,
                api_deps=deps,
            )
        except DomainValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except MediaTransferError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.post(
        "/images/{image_id}/process",
        response_model=ProcessImageResponse,
        responses={
            400: {"model": ErrorResponse},
            404: {"model": ErrorResponse},
            409: {"model": ErrorResponse},
            503: {"model": ErrorResponse},
        },
        tags=["Images"],
    )
    async def process_image(
        image_id: str,
        request: ProcessImageRequest | None = None,
    ) -> ProcessImageResponse:
        deps = _require_deps()
        pipeline = (request or ProcessImageRequest()).pipeline
        try:
            return await process_image_handler(image_id=image_id, pipeline=pipeline, api_deps=deps)
        except ImageNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except DomainValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except DomainInvariantError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc

    @app.get("/images", response_model=ImageListResponse, responses={400: {"model": ErrorResponse}}, tags=["Images"])
    async def list_images(
        status: str | None = None,
        page: int = Query(default=1, ge=1),
        page_size: int = Query(default=20, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
    ) -> ImageListResponse:
        deps = _require_deps()
        try:
            return await list_images_handler(status=status, page=page, page_size=page_size, api_deps=deps)
        except DomainValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get(
        "/images/{image_id}",
        response_model=ImageDetailResponse,
        responses={404: {"model": ErrorResponse}, 502: {"model": ErrorResponse}},
        tags=["Images"],
    )
    async def get_image(image_id: str) -> ImageDetailResponse:
        deps = _require_deps()
        try:
            return await get_image_handler(image_id=image_id, api_deps=deps)
        except ImageNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        except MediaTransferError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc

    @app.delete(
        "/images/{image_id}",
        response_model=DeleteImageResponse,
        responses={404: {"model": ErrorResponse}},
        tags=["Images"],
    )
    async def delete_image(image_id: str) -> DeleteImageResponse:
        deps = _require_deps()
        try:
            return await delete_image_handler(image_id=image_id, api_deps=deps)
        except ImageNotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.get("/jobs/{job_id}", response_model=JobResponse, responses={404: {"model": ErrorResponse}}, tags=["Jobs"])
    async def get_job(job_id: int) -> JobResponse:
        job = await get_job_handler(job_id=job_id, api_deps=_require_deps())
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        return job

    @app.get("/queue", response_model=QueueStatsResponse, tags=["Jobs"])
    async def queue_stats(window_hours: int = Query(default=24, ge=1, le=24 * 30)) -> QueueStatsResponse:
        return await queue_stats_handler(api_deps=_require_deps(), window_hours=window_hours)

    @app.get("/metrics", response_model=MetricsResponse, tags=["System"])
    async def metrics() -> MetricsResponse:
        return await metrics_handler(api_deps=_require_deps())

    return app


def _mode(api_deps: ApiDeps | None) -> str:
    if api_deps is None:
        return "empty"
    return type(api_deps.repository).__name__.removesuffix("JobRepository").lower()
