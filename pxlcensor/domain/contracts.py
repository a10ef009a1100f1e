from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from pxlcensor.domain.models import (
    AuditEvent,
    EnqueueResult,
    FailOutcome,
    ImagePage,
    ImageRegistration,
    ImageSnapshot,
    JobClaim,
    JobSnapshot,
    ProcessingOptions,
    QueueStats,
    ServiceMetrics,
)
from pxlcensor.storage.signing import Capability

if TYPE_CHECKING:
    from pxlcensor.notify.wake import WakeSignal


CLAIM_SQL_CONTRACT = "SELECT ... FOR UPDATE SKIP LOCKED"
STORAGE_AREAS = (
    "originals",
    "processed",
)


@runtime_checkable
class JobRepository(Protocol):
    """Job queue engine contract.

    Claim semantics must remain compatible with Postgres row claims using
    SELECT ... FOR UPDATE SKIP LOCKED: no two concurrent claim_next calls may
    return the same job.
    """

    async def create_image(
        self,
        *,
        sha256: str,
        mime: str,
        bytes_size: int,
        original_path: str,
        processing_options: ProcessingOptions,
    ) -> ImageRegistration: ...

    async def get_image(self, *, image_id: str) -> ImageSnapshot | None: ...

    async def delete_image(self, *, image_id: str) -> ImageSnapshot | None: ...

    async def list_images(self, *, status: str | None = None, page: int = 1, page_size: int = 20) -> ImagePage: ...

    async def list_events(self, *, image_id: str) -> list[AuditEvent]: ...

    async def enqueue(
        self,
        *,
        image_id: str,
        kind: str,
        dedupe_key: str,
        options: dict[str, object] | None = None,
    ) -> EnqueueResult: ...

    async def claim_next(self, *, worker_id: str, batch_size: int = 1) -> list[JobClaim]: ...

    async def complete(
        self,
        *,
        job_id: int,
        result_path: str | None,
        worker_id: str | None = None,
        attempts: int | None = None,
    ) -> bool: ...

    async def fail(
        self,
        *,
        job_id: int,
        error_message: str,
        max_attempts: int = 3,
        worker_id: str | None = None,
        attempts: int | None = None,
    ) -> FailOutcome | None: ...

    async def get_job(self, *, job_id: int) -> JobSnapshot | None: ...

    async def queue_stats(self, *, window_hours: int = 24) -> QueueStats: ...

    async def metrics(self) -> ServiceMetrics: ...

    # Raises when the backing store is unreachable.
    async def ping(self) -> None: ...

    # Recovery sweep for claims abandoned by crashed workers.
    async def requeue_stale_claims(self, *, stale_after_seconds: int, max_attempts: int = 3) -> int: ...


@runtime_checkable
class JobNotifier(Protocol):
    """Best-effort wake channel: at-most-once, unordered, payload-free."""

    async def publish(self) -> None: ...

    async def subscribe(self, signal: WakeSignal) -> None: ...

    async def unsubscribe(self, signal: WakeSignal) -> None: ...


@runtime_checkable
class MediaClient(Protocol):
    """Worker/producer side of the capability-gated file store."""

    async def sign(self, *, method: str, path: str, ttl_seconds: int = 300) -> Capability: ...

    async def download(self, *, path: str) -> bytes: ...

    async def upload(self, *, path: str, payload: bytes) -> str: ...

    async def delete(self, *, path: str) -> bool: ...


@runtime_checkable
class FilterRunner(Protocol):
    async def run(
        self,
        *,
        input_path: Path,
        output_path: Path,
        options: ProcessingOptions,
        scale: str,
    ) -> str: ...
