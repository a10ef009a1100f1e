"""Subprocess wrapper around the deface anonymization CLI."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from pathlib import Path
import signal

from pxlcensor.domain.errors import FilterError
from pxlcensor.domain.models import ProcessingOptions, ReplaceMethod
from pxlcensor.settings import DEFAULT_DEFACE_BIN

logger = logging.getLogger("runtime")

MB = 1024 * 1024

SCALE_1080P = "1920x1080"
SCALE_900P = "1600x900"
SCALE_720P = "1280x720"


def inference_scale_for_size(size_bytes: int, *, force_720p: bool = False) -> str:
    """Pick the detector resolution hint from the input size.

    Large files are usually high resolution, so they get a smaller inference
    size to bound memory and run time.
    """
    if force_720p or size_bytes > 10 * MB:
        return SCALE_720P
    if size_bytes > 2 * MB:
        return SCALE_900P
    return SCALE_1080P


def build_filter_args(
    *,
    input_path: Path,
    output_path: Path,
    options: ProcessingOptions,
    scale: str,
) -> list[str]:
    args = [str(input_path), "-o", str(output_path), "--replacewith", options.method.value]
    if options.method == ReplaceMethod.MOSAIC:
        args.extend(["--mosaicsize", str(options.mosaic_size)])
    args.extend(["--scale", scale])
    return args


@dataclass(frozen=True)
class DefaceFilterRunner:
    executable: str = DEFAULT_DEFACE_BIN
    timeout_seconds: int = 600

    async def run(
        self,
        *,
        input_path: Path,
        output_path: Path,
        options: ProcessingOptions,
        scale: str,
    ) -> str:
        args = build_filter_args(input_path=input_path, output_path=output_path, options=options, scale=scale)
        logger.info("running filter", extra={"path": str(input_path), "detail": " ".join([self.executable, *args])})
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable,
                *args,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise FilterError(f"failed to spawn filter: {exc}") from exc

        try:
            _, stderr_bytes = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise FilterError(f"filter timed out after {self.timeout_seconds}s") from exc

        stderr = stderr_bytes.decode("utf-8", errors="replace").strip()
        if process.returncode is not None and process.returncode < 0:
            raise FilterError(f"filter was killed by signal {_signal_name(-process.returncode)}: {stderr}")
        if process.returncode != 0:
            raise FilterError(f"filter failed with code {process.returncode}: {stderr}")

        try:
            produced = output_path.stat().st_size
        except FileNotFoundError as exc:
            raise FilterError("filter did not create output file") from exc
        if produced == 0:
            raise FilterError("filter produced an empty output file")
        return stderr


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)
