from __future__ import annotations

import asyncio
from pathlib import Path
import stat

import pytest

from pxlcensor.domain.errors import FilterError
from pxlcensor.domain.models import ProcessingOptions, ReplaceMethod
from pxlcensor.workers.filter import DefaceFilterRunner, build_filter_args, inference_scale_for_size

MB = 1024 * 1024


def _script(tmp_path: Path, body: str) -> str:
    path = tmp_path / "fake-deface"
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IEXEC)
    return str(path)


def _run(runner: DefaceFilterRunner, tmp_path: Path, options: ProcessingOptions | None = None) -> str:
    input_path = tmp_path / "in.jpg"
    input_path.write_bytes(b"input")
    return asyncio.run(
        runner.run(
            input_path=input_path,
            output_path=tmp_path / "out.jpg",
            options=options or ProcessingOptions(),
            scale="1920x1080",
        )
    )


@pytest.mark.unit
@pytest.mark.parametrize(
    ("size", "expected"),
    [
        (0, "1920x1080"),
        (2 * MB, "1920x1080"),
        (2 * MB + 1, "1600x900"),
        (10 * MB, "1600x900"),
        (10 * MB + 1, "1280x720"),
    ],
)
def test_inference_scale_tiers(size: int, expected: str) -> None:
    assert inference_scale_for_size(size) == expected


@pytest.mark.unit
def test_scale_flag_forces_720p() -> None:
    assert inference_scale_for_size(100, force_720p=True) == "1280x720"


@pytest.mark.unit
def test_filter_args_for_each_method() -> None:
    common = {"input_path": Path("/t/in.jpg"), "output_path": Path("/t/out.jpg"), "scale": "1600x900"}

    mosaic = build_filter_args(options=ProcessingOptions(mosaic_size=35), **common)  # type: ignore[arg-type]
    blur = build_filter_args(options=ProcessingOptions(method=ReplaceMethod.BLUR), **common)  # type: ignore[arg-type]

    assert mosaic == [
        "/t/in.jpg", "-o", "/t/out.jpg", "--replacewith", "mosaic", "--mosaicsize", "35", "--scale", "1600x900",
    ]
    assert blur == ["/t/in.jpg", "-o", "/t/out.jpg", "--replacewith", "blur", "--scale", "1600x900"]


@pytest.mark.unit
def test_successful_run_returns_stderr(tmp_path: Path) -> None:
    executable = _script(tmp_path, 'cp "$1" "$3"\necho "detected 1 face" >&2')

    stderr = _run(DefaceFilterRunner(executable=executable), tmp_path)

    assert stderr == "detected 1 face"
    assert (tmp_path / "out.jpg").read_bytes() == b"input"


@pytest.mark.unit
def test_non_zero_exit_raises_with_stderr(tmp_path: Path) -> None:
    executable = _script(tmp_path, 'echo "model missing" >&2\nexit 3')

    with pytest.raises(FilterError, match="code 3: model missing"):
        _run(DefaceFilterRunner(executable=executable), tmp_path)


@pytest.mark.unit
def test_signal_termination_raises(tmp_path: Path) -> None:
    executable = _script(tmp_path, "kill -9 $$")

    with pytest.raises(FilterError, match="killed by signal SIGKILL"):
        _run(DefaceFilterRunner(executable=executable), tmp_path)


@pytest.mark.unit
def test_missing_or_empty_output_raises(tmp_path: Path) -> None:
    with pytest.raises(FilterError, match="did not create output"):
        _run(DefaceFilterRunner(executable=_script(tmp_path, "exit 0")), tmp_path)

    with pytest.raises(FilterError, match="empty output"):
        _run(DefaceFilterRunner(executable=_script(tmp_path, ': > "$3"')), tmp_path)


@pytest.mark.unit
def test_timeout_kills_filter(tmp_path: Path) -> None:
    executable = _script(tmp_path, "exec sleep 5")

    with pytest.raises(FilterError, match="timed out"):
        _run(DefaceFilterRunner(executable=executable, timeout_seconds=1), tmp_path)


@pytest.mark.unit
def test_missing_executable_raises(tmp_path: Path) -> None:
    with pytest.raises(FilterError, match="failed to spawn"):
        _run(DefaceFilterRunner(executable=str(tmp_path / "nope")), tmp_path)
