from __future__ import annotations

from collections.abc import Mapping

from pxlcensor.domain.errors import DomainValidationError
from pxlcensor.domain.models import ProcessingOptions, ReplaceMethod

MOSAIC_SIZE_MIN = 1
MOSAIC_SIZE_MAX = 120


def parse_processing_options(data: Mapping[str, object] | None) -> ProcessingOptions:
    """Merge user-supplied options over the defaults and validate them.

    Unknown keys are ignored so older rows with extra fields keep loading.
    """
    defaults = ProcessingOptions()
    if not data:
        return defaults

    raw_method = data.get("method", defaults.method.value)
    try:
        method = ReplaceMethod(str(raw_method))
    except ValueError as exc:
        allowed = ", ".join(item.value for item in ReplaceMethod)
        raise DomainValidationError(f"invalid processing method '{raw_method}'; expected one of: {allowed}") from exc

    mosaic_size = data.get("mosaic_size", defaults.mosaic_size)
    if isinstance(mosaic_size, bool) or not isinstance(mosaic_size, int):
        raise DomainValidationError("mosaic_size must be an integer")
    if mosaic_size < MOSAIC_SIZE_MIN or mosaic_size > MOSAIC_SIZE_MAX:
        raise DomainValidationError(f"mosaic_size must be between {MOSAIC_SIZE_MIN}-{MOSAIC_SIZE_MAX}")

    scale_720p = data.get("scale_720p", defaults.scale_720p)
    if not isinstance(scale_720p, bool):
        raise DomainValidationError("scale_720p must be a boolean")

    return ProcessingOptions(method=method, mosaic_size=mosaic_size, scale_720p=scale_720p)
