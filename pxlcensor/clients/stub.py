from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from pathlib import Path

from pxlcensor.domain.contracts import STORAGE_AREAS
from pxlcensor.domain.errors import FilterError, MediaTransferError
from pxlcensor.domain.models import ProcessingOptions
from pxlcensor.storage.signing import DEFAULT_TTL_SECONDS, Capability, CapabilitySigner


@dataclass
class StubMediaClient:
    signer: CapabilitySigner = field(default_factory=lambda: CapabilitySigner(secret="stub-secret"))
    objects: dict[str, bytes] = field(default_factory=dict)
    uploads: list[str] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)

    async def sign(self, *, method: str, path: str, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> Capability:
        return self.signer.issue(method=method, path="/" + path.lstrip("/"), ttl_seconds=ttl_seconds)

    async def download(self, *, path: str) -> bytes:
        key = _key(path)
        payload = self.objects.get(key)
        if payload is None:
            raise MediaTransferError(f"GET /{key} failed: 404 not found", status_code=404)
        return payload

    async def upload(self, *, path: str, payload: bytes) -> str:
        key = _key(path)
        self.uploads.append(key)
        self.objects[key] = payload
        return key

    async def delete(self, *, path: str) -> bool:
        key = _key(path)
        self.deletes.append(key)
        return self.objects.pop(key, None) is not None


@dataclass
class StubFilterRunner:
    """Copies the input to the output instead of running deface."""

    calls: list[tuple[str, str]] = field(default_factory=list)
    fail_with: str | None = None
    delay_seconds: float = 0.0

    async def run(
        self,
        *,
        input_path: Path,
        output_path: Path,
        options: ProcessingOptions,
        scale: str,
    ) -> str:
        self.calls.append((options.method.value, scale))
        if self.delay_seconds:
            await asyncio.sleep(self.delay_seconds)
        if self.fail_with is not None:
            raise FilterError(self.fail_with)
        output_path.write_bytes(input_path.read_bytes())
        return ""


def _key(path: str) -> str:
    key = path.lstrip("/")
    if not any(key.startswith(f"{area}/") for area in STORAGE_AREAS):
        raise ValueError("storage path must start with an allowed area prefix")
    return key
