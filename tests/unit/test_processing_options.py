from __future__ import annotations

from datetime import UTC, datetime

import pytest

from pxlcensor.domain.errors import DomainValidationError
from pxlcensor.domain.ids import new_original_path, new_worker_id, processed_path_for
from pxlcensor.domain.lifecycle import dedupe_key_for, is_allowed_transition, retry_delay_seconds
from pxlcensor.domain.models import ProcessingOptions, ReplaceMethod
from pxlcensor.domain.options import parse_processing_options


@pytest.mark.unit
def test_defaults_fill_missing_options() -> None:
    assert parse_processing_options(None) == ProcessingOptions()
    assert parse_processing_options({"method": "blur"}) == ProcessingOptions(method=ReplaceMethod.BLUR)
    assert parse_processing_options({"mosaic_size": 1, "legacy": "ignored"}).mosaic_size == 1


@pytest.mark.unit
@pytest.mark.parametrize(
    "options",
    [
        {"method": "none"},
        {"method": "pixelate"},
        {"mosaic_size": 0},
        {"mosaic_size": 121},
        {"mosaic_size": 20.5},
        {"mosaic_size": "20"},
        {"mosaic_size": True},
        {"scale_720p": "yes"},
    ],
)
def test_invalid_options_are_rejected(options: dict[str, object]) -> None:
    with pytest.raises(DomainValidationError):
        parse_processing_options(options)


@pytest.mark.unit
def test_options_round_trip_through_json_shape() -> None:
    options = ProcessingOptions(method=ReplaceMethod.SOLID, mosaic_size=42, scale_720p=True)

    assert options.to_json() == {"method": "solid", "mosaic_size": 42, "scale_720p": True}
    assert parse_processing_options(options.to_json()) == options


@pytest.mark.unit
def test_storage_paths_follow_original_layout() -> None:
    path = new_original_path(mime="image/png", now=datetime(2024, 3, 9, tzinfo=UTC))

    assert path.startswith("originals/2024/03/")
    assert path.endswith(".png")
    assert processed_path_for(path) == "processed/" + path.removeprefix("originals/")
    assert processed_path_for("legacy/a.jpg") == "processed/legacy/a.jpg"


@pytest.mark.unit
def test_lifecycle_helpers() -> None:
    assert [retry_delay_seconds(n) for n in (1, 2, 3)] == [10, 20, 30]
    assert dedupe_key_for(sha256="abc", kind="deface_boxes") == "abc:deface_boxes"
    assert is_allowed_transition("queued", "processing") is True
    assert is_allowed_transition("done", "queued") is False
    assert is_allowed_transition("queued", "done") is False
    assert is_allowed_transition("bogus", "done") is False
    assert new_worker_id().startswith("worker-")
