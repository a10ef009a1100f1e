from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import logging

from pxlcensor.domain.contracts import JobRepository
from pxlcensor.domain.error_taxonomy import format_error_log
from pxlcensor.domain.lifecycle import DEFAULT_MAX_ATTEMPTS
from pxlcensor.domain.models import JobClaim, ProcessResult
from pxlcensor.notify.wake import WakeSignal

ProcessHandler = Callable[[JobClaim], Awaitable[ProcessResult]]
logger = logging.getLogger("runtime")


@dataclass
class WorkerLoop:
    """Keeps up to `concurrency` claimed jobs running at once.

    Jobs are only ever moved through the repository; a finished task sets
    `wake` so the runner claims the next job without waiting for a poll.
    """

    worker_id: str
    repository: JobRepository
    process: ProcessHandler
    concurrency: int = 1
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    wake: WakeSignal = field(default_factory=WakeSignal)
    in_flight: dict[int, asyncio.Task[None]] = field(default_factory=dict)
    completed_total: int = 0
    failed_total: int = 0
    _fill_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def in_flight_count(self) -> int:
        return len(self.in_flight)

    async def fill(self) -> int:
        """Claim enough jobs to saturate the in-flight set; returns how many started."""
        async with self._fill_lock:
            free_slots = self.concurrency - len(self.in_flight)
            if free_slots <= 0:
                return 0
            claims = await self.repository.claim_next(worker_id=self.worker_id, batch_size=free_slots)
            for claim in claims:
                logger.info(
                    "job claimed",
                    extra={
                        "worker_id": self.worker_id,
                        "job_id": claim.job_id,
                        "image_id": claim.image_id,
                        "detail": f"attempt {claim.attempts}",
                    },
                )
                self.in_flight[claim.job_id] = asyncio.create_task(self._run(claim))
            return len(claims)

    async def drain(self) -> None:
        if self.in_flight:
            await asyncio.gather(*self.in_flight.values(), return_exceptions=True)

    async def _run(self, claim: JobClaim) -> None:
        try:
            try:
                result = await self.process(claim)
            except Exception as exc:
                logger.exception(
                    "job handler crashed",
                    extra={"worker_id": self.worker_id, "job_id": claim.job_id, "image_id": claim.image_id},
                )
                result = ProcessResult(success=False, detail=str(exc) or type(exc).__name__, error_code="internal_error")
            await self._report(claim, result)
        except Exception:
            # The stale-claim sweep recovers jobs whose outcome could not be stored.
            logger.exception(
                "job outcome not recorded",
                extra={"worker_id": self.worker_id, "job_id": claim.job_id, "image_id": claim.image_id},
            )
        finally:
            self.in_flight.pop(claim.job_id, None)
            self.wake.set()

    async def _report(self, claim: JobClaim, result: ProcessResult) -> None:
        if result.success:
            completed = await self.repository.complete(
                job_id=claim.job_id,
                result_path=result.result_path,
                worker_id=self.worker_id,
                attempts=claim.attempts,
            )
            self.completed_total += 1
            logger.info(
                "job completed",
                extra={
                    "worker_id": self.worker_id,
                    "job_id": claim.job_id,
                    "image_id": claim.image_id,
                    "path": result.result_path,
                    "detail": "recorded" if completed else "already finalized",
                },
            )
            return

        error_log = format_error_log(code=result.error_code, detail=result.detail)
        outcome = await self.repository.fail(
            job_id=claim.job_id,
            error_message=error_log,
            max_attempts=self.max_attempts,
            worker_id=self.worker_id,
            attempts=claim.attempts,
        )
        self.failed_total += 1
        logger.warning(
            "job failed",
            extra={
                "worker_id": self.worker_id,
                "job_id": claim.job_id,
                "image_id": claim.image_id,
                "detail": f"{outcome.value if outcome else 'ignored'}: {error_log}",
            },
        )
