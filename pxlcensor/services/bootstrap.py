from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import os

from pxlcensor.api.handlers.deps import ApiDeps
from pxlcensor.clients.media import HttpMediaClient
from pxlcensor.clients.stub import StubFilterRunner, StubMediaClient
from pxlcensor.domain.contracts import FilterRunner, JobNotifier, JobRepository, MediaClient
from pxlcensor.domain.ids import new_worker_id
from pxlcensor.notify.memory import InMemoryJobNotifier
from pxlcensor.notify.postgres import PostgresJobNotifier
from pxlcensor.repositories.postgres import AsyncpgPoolManager, PostgresJobRepository
from pxlcensor.repositories.stub import InMemoryJobRepository
from pxlcensor.roles import RuntimeRole
from pxlcensor.settings import (
    FilterSettings,
    MediaSettings,
    filter_settings_from_env,
    media_settings_from_env,
)
from pxlcensor.storage.atomic import AtomicFileStore
from pxlcensor.storage.signing import CapabilitySigner
from pxlcensor.workers.filter import DefaceFilterRunner
from pxlcensor.workers.handlers.deps import WorkerDeps
from pxlcensor.workers.handlers.factory import build_process_handler
from pxlcensor.workers.loop import WorkerLoop

Hook = Callable[[], Awaitable[None]]


@dataclass
class RuntimeContainer:
    repository: JobRepository
    notifier: JobNotifier
    media: MediaClient
    filter_runner: FilterRunner
    media_settings: MediaSettings
    filter_settings: FilterSettings
    store: AtomicFileStore
    signer: CapabilitySigner
    api_deps: ApiDeps
    worker_loop: WorkerLoop | None
    on_startup: Hook | None
    on_shutdown: Hook | None


def build_runtime_container(role: RuntimeRole) -> RuntimeContainer:
    media_settings = media_settings_from_env()
    filter_settings = filter_settings_from_env()
    signer = CapabilitySigner(secret=media_settings.signing_secret)
    store = AtomicFileStore(root=media_settings.root)

    startup_hooks: list[Hook] = []
    shutdown_hooks: list[Hook] = []

    database_url = os.getenv("DATABASE_URL")
    repository: JobRepository
    notifier: JobNotifier
    if database_url:
        pool_manager = AsyncpgPoolManager(dsn=database_url)
        notifier = PostgresJobNotifier(pool_manager=pool_manager, dsn=database_url)
        repository = PostgresJobRepository(pool_manager=pool_manager, notifier=notifier)
        startup_hooks.append(pool_manager.startup)
        shutdown_hooks.append(pool_manager.shutdown)
    else:
        notifier = InMemoryJobNotifier()
        repository = InMemoryJobRepository(notifier=notifier)

    media: MediaClient
    if media_settings.service_url:
        http_media = HttpMediaClient(base_url=media_settings.service_url)
        shutdown_hooks.insert(0, http_media.aclose)
        media = http_media
    else:
        media = StubMediaClient(signer=signer)

    filter_runner: FilterRunner
    if filter_settings.executable:
        filter_runner = DefaceFilterRunner(
            executable=filter_settings.executable,
            timeout_seconds=filter_settings.timeout_seconds,
        )
    else:
        filter_runner = StubFilterRunner()

    api_deps = ApiDeps(repository=repository, media=media, media_settings=media_settings)

    worker_loop: WorkerLoop | None = None
    if role.runs_worker:
        worker_deps = WorkerDeps(
            repository=repository,
            media=media,
            filter_runner=filter_runner,
            temp_dir=filter_settings.temp_dir,
        )
        worker_loop = WorkerLoop(
            worker_id=os.getenv("WORKER_ID") or new_worker_id(),
            repository=repository,
            process=build_process_handler(worker_deps),
        )

    return RuntimeContainer(
        repository=repository,
        notifier=notifier,
        media=media,
        filter_runner=filter_runner,
        media_settings=media_settings,
        filter_settings=filter_settings,
        store=store,
        signer=signer,
        api_deps=api_deps,
        worker_loop=worker_loop,
        on_startup=_chain(startup_hooks),
        on_shutdown=_chain(shutdown_hooks),
    )


def _chain(hooks: list[Hook]) -> Hook | None:
    if not hooks:
        return None

    async def _run_all() -> None:
        for hook in hooks:
            await hook()

    return _run_all
