from __future__ import annotations

from dataclasses import dataclass
import os
from pathlib import Path
import tempfile

from pxlcensor.storage.signing import DEFAULT_TTL_SECONDS, DETAIL_VIEW_TTL_SECONDS

DEFAULT_DEFACE_BIN = "/opt/deface-env/bin/deface"
DEV_SIGNING_SECRET = "dev-secret-change-me"


@dataclass(frozen=True)
class MediaSettings:
    root: Path = Path("./media")
    signing_secret: str = DEV_SIGNING_SECRET
    service_url: str | None = None
    sign_ttl_seconds: int = DEFAULT_TTL_SECONDS
    detail_ttl_seconds: int = DETAIL_VIEW_TTL_SECONDS
    max_upload_mb: int = 25

    @property
    def max_upload_bytes(self) -> int:
        return self.max_upload_mb * 1024 * 1024


@dataclass(frozen=True)
class FilterSettings:
    executable: str | None = None
    temp_dir: Path | None = None
    timeout_seconds: int = 600


def media_settings_from_env() -> MediaSettings:
    return MediaSettings(
        root=Path(env_str("MEDIA_ROOT", "./media")),
        signing_secret=env_str("MEDIA_SIGNING_SECRET", DEV_SIGNING_SECRET),
        service_url=os.getenv("MEDIA_SERVICE_URL") or None,
        sign_ttl_seconds=env_int("MEDIA_SIGN_TTL_SECONDS", DEFAULT_TTL_SECONDS),
        detail_ttl_seconds=env_int("MEDIA_DETAIL_TTL_SECONDS", DETAIL_VIEW_TTL_SECONDS),
        max_upload_mb=env_int("MAX_UPLOAD_MB", 25),
    )


def filter_settings_from_env() -> FilterSettings:
    temp_dir = os.getenv("TEMP_DIR")
    return FilterSettings(
        executable=os.getenv("DEFACE_BIN") or None,
        temp_dir=Path(temp_dir) if temp_dir else Path(tempfile.gettempdir()),
        timeout_seconds=env_int("FILTER_TIMEOUT_SECONDS", 600),
    )


def env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default

    try:
        parsed = int(value)
    except ValueError:
        return default

    return parsed if parsed > 0 else default


def env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    return value.strip()
