from __future__ import annotations

from typing import Literal

# Canonical error vocabulary for the anonymize pipeline.
ErrorCode = Literal[
    "image_missing",
    "media_download_failed",
    "filter_failed",
    "media_upload_failed",
    "internal_error",
]

CANONICAL_ERROR_CODES: tuple[ErrorCode, ...] = (
    "image_missing",
    "media_download_failed",
    "filter_failed",
    "media_upload_failed",
    "internal_error",
)


def is_canonical_error_code(code: str) -> bool:
    return code in CANONICAL_ERROR_CODES


def resolve_error_code(code: str | None) -> ErrorCode:
    if code is not None and is_canonical_error_code(code):
        return code  # type: ignore[return-value]
    # Keep persisted error_log prefixes stable even if a handler emitted an unknown code.
    return "internal_error"


def format_error_log(*, code: str | None, detail: str) -> str:
    resolved = resolve_error_code(code)
    detail = detail.strip()
    if not detail:
        return resolved
    return f"{resolved}: {detail}"
