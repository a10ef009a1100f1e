from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from pxlcensor.domain.contracts import JobNotifier
from pxlcensor.domain.errors import DomainInvariantError, DomainValidationError, ImageNotFoundError
from pxlcensor.domain.ids import new_image_id
from pxlcensor.domain.lifecycle import (
    IMAGE_STATUS_FOR_JOB,
    STALE_CLAIM_ERROR,
    is_allowed_transition,
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


def _utcnow() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class _ImageRow:
    image_id: str
    sha256: str
    mime: str
    bytes: int
    original_path: str
    processing_options: dict[str, object]
    processed_path: str | None = None
    status: str = ImageStatus.UPLOADED.value
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class _JobRow:
    job_id: int
    image_id: str
    kind: str
    dedupe_key: str
    run_at: datetime
    processing_options: dict[str, object]
    status: str = JobStatus.QUEUED.value
    attempts: int = 0
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    error_log: str | None = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)


@dataclass
class _EventRow:
    image_id: str
    type: str
    at: datetime
    data: dict[str, object]


@dataclass
class InMemoryJobRepository:
    """Non-network job queue with the same transition rules as the Postgres one.

    A single asyncio lock stands in for row locks; every operation runs to
    completion under it, so concurrent claimers never see the same queued row.
    """

    notifier: JobNotifier | None = None
    clock: Callable[[], datetime] = _utcnow
    images: dict[str, _ImageRow] = field(default_factory=dict)
    jobs: dict[int, _JobRow] = field(default_factory=dict)
    events: list[_EventRow] = field(default_factory=list)
    next_job_id: int = 1
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    async def create_image(
        self,
        *,
        sha256: str,
        mime: str,
        bytes_size: int,
        original_path: str,
        processing_options: ProcessingOptions,
    ) -> ImageRegistration:
        async with self._lock:
            existing = next((row for row in self.images.values() if row.sha256 == sha256), None)
            if existing is not None:
                return ImageRegistration(image=_image_snapshot(existing), created=False)

            now = self.clock()
            row = _ImageRow(
                image_id=new_image_id(),
                sha256=sha256,
                mime=mime,
                bytes=bytes_size,
                original_path=original_path,
                processing_options=processing_options.to_json(),
                created_at=now,
                updated_at=now,
            )
            self.images[row.image_id] = row
            self._append_event(row.image_id, "uploaded", {"mime": mime, "bytes": bytes_size})
            return ImageRegistration(image=_image_snapshot(row), created=True)

    async def get_image(self, *, image_id: str) -> ImageSnapshot | None:
        row = self.images.get(image_id)
        if row is None:
            return None
        return _image_snapshot(row)

    async def delete_image(self, *, image_id: str) -> ImageSnapshot | None:
        async with self._lock:
            row = self.images.pop(image_id, None)
            if row is None:
                return None
            # Mirror ON DELETE CASCADE.
            self.jobs = {job_id: job for job_id, job in self.jobs.items() if job.image_id != image_id}
            self.events = [event for event in self.events if event.image_id != image_id]
            return _image_snapshot(row)

    async def list_images(self, *, status: str | None = None, page: int = 1, page_size: int = 20) -> ImagePage:
        validate_image_page(status=status, page=page, page_size=page_size)
        matching = sorted(
            (row for row in self.images.values() if status is None or row.status == status),
            key=lambda row: (row.created_at, row.image_id),
            reverse=True,
        )
        offset = (page - 1) * page_size
        return ImagePage(
            images=[_image_snapshot(row) for row in matching[offset : offset + page_size]],
            total=len(matching),
            page=page,
            page_size=page_size,
        )

    async def list_events(self, *, image_id: str) -> list[AuditEvent]:
        return [
            AuditEvent(image_id=event.image_id, type=event.type, at=event.at, data=dict(event.data))
            for event in reversed(self.events)
            if event.image_id == image_id
        ]

    async def enqueue(
        self,
        *,
        image_id: str,
        kind: str,
        dedupe_key: str,
        options: dict[str, object] | None = None,
    ) -> EnqueueResult:
        async with self._lock:
            image = self.images.get(image_id)
            if image is None:
                raise ImageNotFoundError(f"image not found: {image_id}")
            job_options = parse_processing_options(options if options is not None else image.processing_options)

            existing = next((job for job in self.jobs.values() if job.dedupe_key == dedupe_key), None)
            if existing is not None:
                return EnqueueResult(job_id=existing.job_id, status=existing.status, duplicate=True)

            now = self.clock()
            job = _JobRow(
                job_id=self.next_job_id,
                image_id=image_id,
                kind=kind,
                dedupe_key=dedupe_key,
                run_at=now,
                processing_options=job_options.to_json(),
                created_at=now,
                updated_at=now,
            )
            self.next_job_id += 1
            self.jobs[job.job_id] = job
            if mirrors_image_status(kind):
                self._set_image_status(image_id, ImageStatus.QUEUED)
            self._append_event(image_id, "queued", {"job_id": job.job_id, "pipeline": kind})

        await self._publish()
        return EnqueueResult(job_id=job.job_id, status=job.status, duplicate=False)

    async def claim_next(self, *, worker_id: str, batch_size: int = 1) -> list[JobClaim]:
        if batch_size < 1:
            raise DomainValidationError("batch_size must be at least 1")
        async with self._lock:
            now = self.clock()
            ready = sorted(
                (job for job in self.jobs.values() if job.status == JobStatus.QUEUED and job.run_at <= now),
                key=lambda job: (job.run_at, job.job_id),
            )[:batch_size]

            claims: list[JobClaim] = []
            for job in ready:
                self._transition(job, JobStatus.PROCESSING)
                job.claimed_by = worker_id
                job.claimed_at = now
                job.attempts += 1
                if mirrors_image_status(job.kind):
                    self._set_image_status(job.image_id, ImageStatus.PROCESSING)
                self._append_event(
                    job.image_id,
                    "job_claimed",
                    {"job_id": job.job_id, "worker_id": worker_id, "attempts": job.attempts},
                )
                claims.append(
                    JobClaim(
                        job_id=job.job_id,
                        image_id=job.image_id,
                        kind=job.kind,
                        attempts=job.attempts,
                        processing_options=dict(job.processing_options),
                        claimed_at=job.claimed_at,
                    )
                )
            return claims

    async def complete(
        self,
        *,
        job_id: int,
        result_path: str | None,
        worker_id: str | None = None,
        attempts: int | None = None,
    ) -> bool:
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or not _holds_claim(job, worker_id=worker_id, attempts=attempts):
                return False
            self._transition(job, JobStatus.DONE)
            job.claimed_by = None
            job.claimed_at = None
            if result_path:
                image = self.images.get(job.image_id)
                if image is not None:
                    image.processed_path = result_path
                    self._set_image_status(job.image_id, ImageStatus.DONE)
            self._append_event(
                job.image_id,
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
        async with self._lock:
            job = self.jobs.get(job_id)
            if job is None or not _holds_claim(job, worker_id=worker_id, attempts=attempts):
                return None
            outcome = self._fail_job(
                job,
                error_message=error_message,
                max_attempts=max_attempts,
                delay_seconds=retry_delay_seconds(job.attempts),
                retry_event="job_retry",
            )

        if outcome == FailOutcome.RETRY:
            await self._publish()
        return outcome

    async def get_job(self, *, job_id: int) -> JobSnapshot | None:
        job = self.jobs.get(job_id)
        if job is None:
            return None
        return JobSnapshot(
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
            processing_options=dict(job.processing_options),
            created_at=job.created_at,
            updated_at=job.updated_at,
        )

    async def queue_stats(self, *, window_hours: int = 24) -> QueueStats:
        since = self.clock() - timedelta(hours=window_hours)
        counts: dict[str, int] = {}
        for job in self.jobs.values():
            if job.created_at > since:
                counts[job.status] = counts.get(job.status, 0) + 1
        return QueueStats(counts=counts, total=sum(counts.values()), window_hours=window_hours)

    async def metrics(self) -> ServiceMetrics:
        since = self.clock() - timedelta(hours=1)
        jobs = list(self.jobs.values())
        return ServiceMetrics(
            total_images=len(self.images),
            processed_images=sum(1 for row in self.images.values() if row.status == ImageStatus.DONE),
            queued_jobs=sum(1 for job in jobs if job.status == JobStatus.QUEUED),
            processing_jobs=sum(1 for job in jobs if job.status == JobStatus.PROCESSING),
            failed_last_hour=sum(1 for job in jobs if job.status == JobStatus.FAILED and job.updated_at > since),
        )

    async def ping(self) -> None:
        return None

    async def requeue_stale_claims(self, *, stale_after_seconds: int, max_attempts: int = 3) -> int:
        requeued = 0
        touched = 0
        async with self._lock:
            cutoff = self.clock() - timedelta(seconds=stale_after_seconds)
            stale = sorted(
                (
                    job
                    for job in self.jobs.values()
                    if job.status == JobStatus.PROCESSING and job.claimed_at is not None and job.claimed_at < cutoff
                ),
                key=lambda job: (job.claimed_at, job.job_id),
            )
            for job in stale:
                outcome = self._fail_job(
                    job,
                    error_message=STALE_CLAIM_ERROR,
                    max_attempts=max_attempts,
                    delay_seconds=0,
                    retry_event="job_reclaimed",
                )
                touched += 1
                if outcome == FailOutcome.RETRY:
                    requeued += 1

        if requeued:
            await self._publish()
        return touched

    def _fail_job(
        self,
        job: _JobRow,
        *,
        error_message: str,
        max_attempts: int,
        delay_seconds: int,
        retry_event: str,
    ) -> FailOutcome:
        payload: dict[str, object] = {"job_id": job.job_id, "attempts": job.attempts, "error": error_message}
        job.error_log = error_message
        job.claimed_by = None
        job.claimed_at = None
        if job.attempts >= max_attempts:
            self._transition(job, JobStatus.FAILED)
            self._set_image_status(job.image_id, ImageStatus.FAILED)
            self._append_event(job.image_id, "job_failed", payload)
            return FailOutcome.FAILED

        self._transition(job, JobStatus.QUEUED)
        job.run_at = max(job.run_at, self.clock() + timedelta(seconds=delay_seconds))
        if mirrors_image_status(job.kind):
            self._set_image_status(job.image_id, IMAGE_STATUS_FOR_JOB[JobStatus.QUEUED])
        self._append_event(job.image_id, retry_event, payload)
        return FailOutcome.RETRY

    def _transition(self, job: _JobRow, to_status: JobStatus) -> None:
        if not is_allowed_transition(job.status, to_status):
            raise DomainInvariantError(f"invalid job transition: {job.status} -> {to_status.value}")
        job.status = to_status.value
        job.updated_at = self.clock()

    def _set_image_status(self, image_id: str, status: ImageStatus) -> None:
        image = self.images.get(image_id)
        if image is None:
            return
        image.status = status.value
        image.updated_at = self.clock()

    def _append_event(self, image_id: str, event_type: str, data: dict[str, object]) -> None:
        self.events.append(_EventRow(image_id=image_id, type=event_type, at=self.clock(), data=dict(data)))

    async def _publish(self) -> None:
        if self.notifier is not None:
            await self.notifier.publish()


def _holds_claim(job: _JobRow, *, worker_id: str | None, attempts: int | None) -> bool:
    """A report only counts while the reporter still owns this attempt of the job."""
    if job.status != JobStatus.PROCESSING:
        return False
    if worker_id is not None and job.claimed_by != worker_id:
        return False
    return attempts is None or job.attempts == attempts


def _image_snapshot(row: _ImageRow) -> ImageSnapshot:
    return ImageSnapshot(
        image_id=row.image_id,
        sha256=row.sha256,
        mime=row.mime,
        bytes=row.bytes,
        original_path=row.original_path,
        processed_path=row.processed_path,
        status=row.status,
        processing_options=dict(row.processing_options),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )
