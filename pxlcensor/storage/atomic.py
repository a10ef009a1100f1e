from __future__ import annotations

from dataclasses import dataclass
import logging
import os
from pathlib import Path

from pxlcensor.domain.ids import new_temp_token

logger = logging.getLogger("runtime")
TEMP_SUFFIX = ".tmp"


@dataclass(frozen=True)
class AtomicFileStore:
    """File store where a write is only ever visible as a complete file.

    Payloads go to a sibling temp file first and are renamed over the final
    path; readers only open final paths.
    """

    root: Path

    def resolve(self, path: str) -> Path:
        relative = path.lstrip("/")
        if not relative:
            raise ValueError("storage path must not be empty")
        root = self.root.resolve()
        target = (root / relative).resolve()
        if target == root or root not in target.parents:
            raise ValueError(f"storage path escapes media root: {path}")
        return target

    def write(self, path: str, payload: bytes) -> Path:
        target = self.resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_path = target.with_name(_temp_name(target.name))
        try:
            with temp_path.open("wb") as handle:
                handle.write(payload)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(temp_path, target)
        except BaseException:
            temp_path.unlink(missing_ok=True)
            raise
        return target

    def read(self, path: str) -> bytes | None:
        target = self.resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            return None

    def delete(self, path: str) -> bool:
        try:
            target = self.resolve(path)
            target.unlink()
        except FileNotFoundError:
            return False
        except (OSError, ValueError):
            logger.warning("media delete failed", exc_info=True, extra={"path": path})
            return False
        return True

    def sweep_temp_files(self) -> int:
        """Remove temp files left behind by writes that never reached the rename.

        Only safe while no write is in flight, i.e. before the service accepts
        requests.
        """
        if not self.root.exists():
            return 0
        removed = 0
        for candidate in self.root.rglob(f".*{TEMP_SUFFIX}"):
            if not candidate.is_file():
                continue
            try:
                candidate.unlink()
            except FileNotFoundError:
                continue
            removed += 1
        return removed


def _temp_name(name: str) -> str:
    return f".{name}.{new_temp_token()}{TEMP_SUFFIX}"
