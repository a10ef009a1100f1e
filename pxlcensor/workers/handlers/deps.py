from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from pxlcensor.domain.contracts import FilterRunner, JobRepository, MediaClient


@dataclass(frozen=True)
class WorkerDeps:
    repository: JobRepository
    media: MediaClient
    filter_runner: FilterRunner
    temp_dir: Path | None = None
