from __future__ import annotations

import importlib
from datetime import UTC, datetime
import uuid

ulid_module = importlib.import_module("ulid")

EXTENSION_BY_MIME = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
}


def new_worker_id() -> str:
    return f"worker-{ulid_module.new().str[-8:].lower()}"


def new_temp_token() -> str:
    return ulid_module.new().str


def new_image_id() -> str:
    return str(uuid.uuid4())


def new_original_path(*, mime: str, now: datetime | None = None) -> str:
    moment = now or datetime.now(tz=UTC)
    extension = EXTENSION_BY_MIME.get(mime, "jpg")
    return f"originals/{moment.year:04d}/{moment.month:02d}/{uuid.uuid4()}.{extension}"


def processed_path_for(original_path: str) -> str:
    if original_path.startswith("originals/"):
        return "processed/" + original_path[len("originals/"):]
    return f"processed/{original_path.lstrip('/')}"
