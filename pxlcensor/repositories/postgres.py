from __future__ import annotations

from dataclasses import dataclass
import importlib
import json
import logging
from pathlib import Path
from typing import Any
import uuid

from pxlcensor.domain.contracts import JobNotifier
from pxlcensor.domain.errors import DomainInvariantError, DomainValidationError, ImageNotFoundError
from pxlcensor.domain.lifecycle import (
    IMAGE_STATUS_FOR_JOB,
    STALE_CLAIM_ERROR,
    mirrors_image_status,
    retry_delay_seconds,
    validate_image_page,
)
from pxlcensor.domain.models import (
    AuditEvent,
    EnqueueResult,
    FailOutcome,
    ImagePage,
    ImageRegistration,
    ImageSnapshot,
    ImageStatus,
    JobClaim,
    JobSnapshot,
    JobStatus,
    ProcessingOptions,
    QueueStats,
    ServiceMetrics,
)
from pxlcensor.domain.options import parse_processing_options

try:
    asyncpg_module = importlib.import_module("asyncpg")
except ModuleNotFoundError:  # pragma: no cover
    asyncpg_module = None  # type: ignore[assignment]

logger = logging.getLogger("runtime")

SQL_DIR = Path(__file__).with_name("sql")


def load_sql(name: str) -> str:
    return (SQL_DIR / name).read_text(encoding="utf-8").strip()


SQL_CREATE_IMAGE = load_sql("create_image.sql")
SQL_FIND_IMAGE_BY_SHA = load_sql("find_image_by_sha.sql")
SQL_GET_IMAGE = load_sql("get_image.sql")
SQL_DELETE_IMAGE = load_sql("delete_image.sql")
SQL_LIST_IMAGES = load_sql("list_images.sql")
SQL_COUNT_IMAGES = load_sql("count_images.sql")
SQL_LOCK_IMAGE_FOR_SHARE = load_sql("lock_image_for_share.sql")
SQL_UPDATE_IMAGE_STATUS = load_sql("update_image_status.sql")
SQL_COMPLETE_IMAGE = load_sql("complete_image.sql")
SQL_INSERT_EVENT = load_sql("insert_event.sql")
SQL_LIST_EVENTS = load_sql("list_events.sql")
SQL_ENQUEUE_JOB = load_sql("enqueue_job.sql")
SQL_FIND_JOB_BY_DEDUPE_KEY = load_sql("find_job_by_dedupe_key.sql")
SQL_GET_JOB = load_sql("get_job.sql")
SQL_CLAIM_JOBS = load_sql("claim_jobs.sql")
SQL_COMPLETE_JOB = load_sql("complete_job.sql")
SQL_LOCK_JOB = load_sql("lock_job.sql")
SQL_FAIL_JOB_TERMINAL = load_sql("fail_job_terminal.sql")
SQL_FAIL_JOB_RETRY = load_sql("fail_job_retry.sql")
SQL_SELECT_STALE_CLAIMS = load_sql("select_stale_claims.sql")
SQL_QUEUE_STATS = load_sql("queue_stats.sql")
SQL_SERVICE_METRICS = load_sql("service_metrics.sql")


@dataclass
class AsyncpgPoolManager:
    dsn: str
    min_size: int = 1
    max_size: int = 5
    pool: Any | None = None

    async def startup(self) -> None:
        if asyncpg_module is None:  # pragma: no cover
            raise RuntimeError("asyncpg is required for postgres repository mode")

        async def _init_connection(conn: Any) -> None:
            await conn.set_type_codec(
                "json",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )
            await conn.set_type_codec(
                "jsonb",
                encoder=json.dumps,
                decoder=json.loads,
                schema="pg_catalog",
            )

        self.pool = await asyncpg_module.create_pool(
            dsn=self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            init=_init_connection,
        )

    async def shutdown(self) -> None:
        if self.pool is None:
            return
        await self.pool.close()
        self.pool = None

    def acquire_pool(self) -> Any:
        if self.pool is None:
            raise RuntimeError("postgres pool is not initialized")
        return self.pool


@dataclass
class PostgresJobRepository:
    pool_manager: AsyncpgPoolManager
    notifier: JobNotifier | None = None

    def _pool(self) -> Any:
        return self.pool_manager.acquire_pool()

    async def create_image(
        self,
        *,
        sha256: str,
        mime: str,
        bytes_size: int,
        original_path: str,
        processing_options: ProcessingOptions,
    ) -> ImageRegistration:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    SQL_CREATE_IMAGE,
                    original_path,
                    sha256,
                    mime,
                    bytes_size,
                    processing_options.to_json(),
                )
                if row is None:
                    existing = await conn.fetchrow(SQL_FIND_IMAGE_BY_SHA, sha256)
                    if existing is None:
                        raise DomainInvariantError("image insert conflict without existing row")
                    return ImageRegistration(image=_image_from_row(existing), created=False)
                await conn.execute(SQL_INSERT_EVENT, row["id"], "uploaded", {"mime": mime, "bytes": bytes_size})
        return ImageRegistration(image=_image_from_row(row), created=True)

    async def get_image(self, *, image_id: str) -> ImageSnapshot | None:
        image_uuid = _as_uuid(image_id)
        if image_uuid is None:
            return None
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_IMAGE, image_uuid)
        if row is None:
            return None
        return _image_from_row(row)

    async def delete_image(self, *, image_id: str) -> ImageSnapshot | None:
        image_uuid = _as_uuid(image_id)
        if image_uuid is None:
            return None
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_DELETE_IMAGE, image_uuid)
        if row is None:
            return None
        return _image_from_row(row)

    async def list_images(self, *, status: str | None = None, page: int = 1, page_size: int = 20) -> ImagePage:
        validate_image_page(status=status, page=page, page_size=page_size)
        pool = self._pool()
        async with pool.acquire() as conn:
            total = await conn.fetchval(SQL_COUNT_IMAGES, status)
            rows = await conn.fetch(SQL_LIST_IMAGES, status, page_size, (page - 1) * page_size)
        return ImagePage(
            images=[_image_from_row(row) for row in rows],
            total=int(total or 0),
            page=page,
            page_size=page_size,
        )

    async def list_events(self, *, image_id: str) -> list[AuditEvent]:
        image_uuid = _as_uuid(image_id)
        if image_uuid is None:
            return []
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_LIST_EVENTS, image_uuid)
        return [
            AuditEvent(
                image_id=str(row["image_id"]),
                type=row["type"],
                at=row["at"],
                data=_json_object(row["data"]),
            )
            for row in rows
        ]

    async def enqueue(
        self,
        *,
        image_id: str,
        kind: str,
        dedupe_key: str,
        options: dict[str, object] | None = None,
    ) -> EnqueueResult:
        image_uuid = _as_uuid(image_id)
        if image_uuid is None:
            raise ImageNotFoundError(f"image not found: {image_id}")

        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                # Holds off a concurrent delete until the job row is in.
                image = await conn.fetchrow(SQL_LOCK_IMAGE_FOR_SHARE, image_uuid)
                if image is None:
                    raise ImageNotFoundError(f"image not found: {image_id}")
                job_options = parse_processing_options(
                    options if options is not None else _json_object(image["processing_options"])
                )

                row = await conn.fetchrow(SQL_ENQUEUE_JOB, image_uuid, kind, dedupe_key, job_options.to_json())
                if row is None:
                    existing = await conn.fetchrow(SQL_FIND_JOB_BY_DEDUPE_KEY, dedupe_key)
                    if existing is None:
                        raise DomainInvariantError("job insert conflict without existing row")
                    return EnqueueResult(job_id=existing["id"], status=existing["status"], duplicate=True)

                if mirrors_image_status(kind):
                    await conn.execute(SQL_UPDATE_IMAGE_STATUS, image_uuid, ImageStatus.QUEUED.value)
                await conn.execute(
                    SQL_INSERT_EVENT,
                    image_uuid,
                    "queued",
                    {"job_id": row["id"], "pipeline": kind},
                )

        await self._publish()
        return EnqueueResult(job_id=row["id"], status=row["status"], duplicate=False)

    async def claim_next(self, *, worker_id: str, batch_size: int = 1) -> list[JobClaim]:
        if batch_size < 1:
            raise DomainValidationError("batch_size must be at least 1")
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(SQL_CLAIM_JOBS, worker_id, batch_size)
                rows = sorted(rows, key=lambda row: (row["run_at"], row["id"]))
                for row in rows:
                    if mirrors_image_status(row["kind"]):
                        await conn.execute(SQL_UPDATE_IMAGE_STATUS, row["image_id"], ImageStatus.PROCESSING.value)
                    await conn.execute(
                        SQL_INSERT_EVENT,
                        row["image_id"],
                        "job_claimed",
                        {"job_id": row["id"], "worker_id": worker_id, "attempts": row["attempts"]},
                    )
        return [
            JobClaim(
                job_id=row["id"],
                image_id=str(row["image_id"]),
                kind=row["kind"],
                attempts=row["attempts"],
                processing_options=_json_object(row["processing_options"]),
                claimed_at=row["claimed_at"],
            )
            for row in rows
        ]

    async def complete(
        self,
        *,
        job_id: int,
        result_path: str | None,
        worker_id: str | None = None,
        attempts: int | None = None,
    ) -> bool:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(SQL_COMPLETE_JOB, job_id, worker_id, attempts)
                if row is None:
                    return False
                if result_path:
                    await conn.execute(SQL_COMPLETE_IMAGE, row["image_id"], result_path)
                await conn.execute(
                    SQL_INSERT_EVENT,
                    row["image_id"],
                    "job_completed",
                    {"job_id": job_id, "processed_path": result_path},
                )
        return True

    async def fail(
        self,
        *,
        job_id: int,
        error_message: str,
        max_attempts: int = 3,
        worker_id: str | None = None,
        attempts: int | None = None,
    ) -> FailOutcome | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                job = await conn.fetchrow(SQL_LOCK_JOB, job_id)
                if job is None or job["status"] != JobStatus.PROCESSING.value:
                    return None
                # Stale report from an attempt the sweep already took away.
                if worker_id is not None and job["claimed_by"] != worker_id:
                    return None
                if attempts is not None and job["attempts"] != attempts:
                    return None
                outcome = await _fail_locked_job(
                    conn,
                    job=job,
                    error_message=error_message,
                    max_attempts=max_attempts,
                    delay_seconds=retry_delay_seconds(job["attempts"]),
                    retry_event="job_retry",
                )

        if outcome == FailOutcome.RETRY:
            await self._publish()
        return outcome

    async def get_job(self, *, job_id: int) -> JobSnapshot | None:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_GET_JOB, job_id)
        if row is None:
            return None
        return JobSnapshot(
            job_id=row["id"],
            image_id=str(row["image_id"]),
            kind=row["kind"],
            status=row["status"],
            dedupe_key=row["dedupe_key"],
            run_at=row["run_at"],
            attempts=row["attempts"],
            claimed_by=row["claimed_by"],
            claimed_at=row["claimed_at"],
            error_log=row["error_log"],
            processing_options=_json_object(row["processing_options"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    async def queue_stats(self, *, window_hours: int = 24) -> QueueStats:
        pool = self._pool()
        async with pool.acquire() as conn:
            rows = await conn.fetch(SQL_QUEUE_STATS, window_hours)
        counts = {row["status"]: int(row["count"]) for row in rows}
        return QueueStats(counts=counts, total=sum(counts.values()), window_hours=window_hours)

    async def metrics(self) -> ServiceMetrics:
        pool = self._pool()
        async with pool.acquire() as conn:
            row = await conn.fetchrow(SQL_SERVICE_METRICS)
        return ServiceMetrics(
            total_images=int(row["total_images"]),
            processed_images=int(row["processed_images"]),
            queued_jobs=int(row["queued_jobs"]),
            processing_jobs=int(row["processing_jobs"]),
            failed_last_hour=int(row["failed_last_hour"]),
        )

    async def ping(self) -> None:
        pool = self._pool()
        async with pool.acquire() as conn:
            await conn.fetchval("SELECT 1")

    async def requeue_stale_claims(self, *, stale_after_seconds: int, max_attempts: int = 3) -> int:
        requeued = 0
        touched = 0
        pool = self._pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(SQL_SELECT_STALE_CLAIMS, float(stale_after_seconds))
                for job in rows:
                    outcome = await _fail_locked_job(
                        conn,
                        job=job,
                        error_message=STALE_CLAIM_ERROR,
                        max_attempts=max_attempts,
                        delay_seconds=0,
                        retry_event="job_reclaimed",
                    )
                    touched += 1
                    if outcome == FailOutcome.RETRY:
                        requeued += 1

        if touched:
            logger.warning(
                "stale claims swept",
                extra={"detail": f"reclaimed={touched} requeued={requeued}"},
            )
        if requeued:
            await self._publish()
        return touched

    async def _publish(self) -> None:
        if self.notifier is not None:
            await self.notifier.publish()


async def _fail_locked_job(
    conn: Any,
    *,
    job: Any,
    error_message: str,
    max_attempts: int,
    delay_seconds: int,
    retry_event: str,
) -> FailOutcome:
    attempts = job["attempts"]
    payload = {"job_id": job["id"], "attempts": attempts, "error": error_message}
    if attempts >= max_attempts:
        await conn.execute(SQL_FAIL_JOB_TERMINAL, job["id"], error_message)
        await conn.execute(SQL_UPDATE_IMAGE_STATUS, job["image_id"], ImageStatus.FAILED.value)
        await conn.execute(SQL_INSERT_EVENT, job["image_id"], "job_failed", payload)
        return FailOutcome.FAILED

    await conn.execute(SQL_FAIL_JOB_RETRY, job["id"], float(delay_seconds), error_message)
    if mirrors_image_status(job["kind"]):
        await conn.execute(
            SQL_UPDATE_IMAGE_STATUS,
            job["image_id"],
            IMAGE_STATUS_FOR_JOB[JobStatus.QUEUED].value,
        )
    await conn.execute(SQL_INSERT_EVENT, job["image_id"], retry_event, payload)
    return FailOutcome.RETRY


def _image_from_row(row: Any) -> ImageSnapshot:
    return ImageSnapshot(
        image_id=str(row["id"]),
        sha256=str(row["sha256"]).strip(),
        mime=row["mime"],
        bytes=row["bytes"],
        original_path=row["original_path"],
        processed_path=row["processed_path"],
        status=row["status"],
        processing_options=_json_object(row["processing_options"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _as_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _json_object(value: object) -> dict[str, object]:
    if isinstance(value, dict):
        return dict(value)
    if isinstance(value, str):
        parsed = json.loads(value)
        if isinstance(parsed, dict):
            return parsed
    return {}
