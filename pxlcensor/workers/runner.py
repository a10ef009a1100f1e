from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass

from pxlcensor.domain.contracts import JobNotifier
from pxlcensor.settings import env_int
from pxlcensor.workers.loop import WorkerLoop


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    concurrency: int = 1
    poll_interval_ms: int = 10000
    error_backoff_ms: int = 2000
    drain_poll_ms: int = 1000
    max_attempts: int = 3
    stale_claim_seconds: int = 900
    reap_interval_ms: int = 60000


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    claims_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    reclaimed_total: int = 0
    subscribe_errors_total: int = 0


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        concurrency=env_int("PROCESSOR_CONCURRENCY", 1),
        poll_interval_ms=env_int("WORKER_POLL_INTERVAL_MS", 10000),
        error_backoff_ms=env_int("WORKER_ERROR_BACKOFF_MS", 2000),
        drain_poll_ms=env_int("WORKER_DRAIN_POLL_MS", 1000),
        max_attempts=env_int("WORKER_MAX_ATTEMPTS", 3),
        stale_claim_seconds=env_int("WORKER_STALE_CLAIM_SECONDS", 900),
        reap_interval_ms=env_int("WORKER_REAP_INTERVAL_MS", 60000),
    )


async def run_worker_until_stopped(
    *,
    worker_loop: WorkerLoop,
    notifier: JobNotifier,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    worker_loop.concurrency = settings.concurrency
    worker_loop.max_attempts = settings.max_attempts
    context = {"role": role, "service": role, "run_id": run_id, "worker_id": worker_loop.worker_id}

    if state is not None:
        state.started = True

    subscribed = await _try_subscribe(notifier, worker_loop, logger, context, state)
    logger.info(
        "worker loop started",
        extra={**context, "detail": f"concurrency={settings.concurrency}"},
    )

    next_reap_at = 0.0
    try:
        while not stop_event.is_set():
            delay_ms = settings.poll_interval_ms
            if not subscribed:
                subscribed = await _try_subscribe(notifier, worker_loop, logger, context, state)
            try:
                now = time.monotonic()
                if now >= next_reap_at:
                    next_reap_at = now + settings.reap_interval_ms / 1000
                    reclaimed = await worker_loop.repository.requeue_stale_claims(
                        stale_after_seconds=settings.stale_claim_seconds,
                        max_attempts=settings.max_attempts,
                    )
                    if state is not None:
                        state.reclaimed_total += reclaimed
                started = await worker_loop.fill()
                if state is not None:
                    state.ticks_total += 1
                    state.claims_total += started
                    if started == 0:
                        state.idle_ticks_total += 1
            except Exception:
                if state is not None:
                    state.ticks_total += 1
                    state.errors_total += 1
                delay_ms = settings.error_backoff_ms
                logger.exception("worker tick error", extra=context)

            await _wait_for_wake(worker_loop, stop_event, timeout=delay_ms / 1000)
    finally:
        if subscribed:
            await notifier.unsubscribe(worker_loop.wake)

    logger.info(
        "worker loop draining",
        extra={**context, "detail": f"in_flight={worker_loop.in_flight_count}"},
    )
    while worker_loop.in_flight_count:
        await asyncio.sleep(settings.drain_poll_ms / 1000)

    logger.info("worker loop stopped", extra=context)
    if state is not None:
        state.stopped = True


async def _try_subscribe(
    notifier: JobNotifier,
    worker_loop: WorkerLoop,
    logger: logging.Logger,
    context: dict[str, str],
    state: WorkerRuntimeState | None,
) -> bool:
    # Without notifications the loop still picks work up on the poll interval.
    try:
        await notifier.subscribe(worker_loop.wake)
    except Exception as exc:
        if state is not None:
            state.subscribe_errors_total += 1
        logger.warning(
            "job notifications unavailable, polling only",
            extra={**context, "detail": f"{type(exc).__name__}: {exc}"},
        )
        return False
    return True


async def _wait_for_wake(worker_loop: WorkerLoop, stop_event: asyncio.Event, *, timeout: float) -> None:
    wake_task = asyncio.create_task(worker_loop.wake.wait())
    stop_task = asyncio.create_task(stop_event.wait())
    try:
        await asyncio.wait({wake_task, stop_task}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in (wake_task, stop_task):
            if not task.done():
                task.cancel()
        await asyncio.gather(wake_task, stop_task, return_exceptions=True)
