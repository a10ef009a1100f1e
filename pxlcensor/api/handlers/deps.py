from __future__ import annotations

from dataclasses import dataclass, field

from pxlcensor.domain.contracts import JobRepository, MediaClient
from pxlcensor.settings import MediaSettings


@dataclass(frozen=True)
class ApiDeps:
    repository: JobRepository
    media: MediaClient
    media_settings: MediaSettings = field(default_factory=MediaSettings)

    def public_url(self, path: str) -> str:
        base = (self.media_settings.service_url or "").rstrip("/")
        return f"{base}/{path.lstrip('/')}"
