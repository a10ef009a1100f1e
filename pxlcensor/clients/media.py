"""Async HTTP client for the media service's capability-gated file store."""

from __future__ import annotations

import logging

import httpx

from pxlcensor.domain.errors import CapabilityDeniedError, MediaTransferError
from pxlcensor.storage.signing import DEFAULT_TTL_SECONDS, EXPIRES_HEADER, SIGNATURE_HEADER, Capability

logger = logging.getLogger("runtime")

DEFAULT_TIMEOUT_SECONDS = 30.0


class HttpMediaClient:
    """Requests a capability from `POST /sign`, then performs the transfer with it."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def sign(self, *, method: str, path: str, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> Capability:
        request_path = _absolute(path)
        try:
            response = await self._client.post(
                "/sign",
                json={"method": method.upper(), "path": request_path, "expires_in": ttl_seconds},
            )
        except httpx.HTTPError as exc:
            raise MediaTransferError(f"failed to get signed url: {exc}") from exc
        if response.status_code != 200:
            raise MediaTransferError(
                f"failed to get signed url: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code,
            )
        body = response.json()
        headers = body.get("headers", {})
        return Capability(
            method=method.upper(),
            path=body.get("url", request_path),
            signature=str(headers[SIGNATURE_HEADER]),
            expires_at_ms=int(headers[EXPIRES_HEADER]),
        )

    async def download(self, *, path: str) -> bytes:
        capability = await self.sign(method="GET", path=path)
        response = await self._transfer("GET", capability)
        return response.content

    async def upload(self, *, path: str, payload: bytes) -> str:
        capability = await self.sign(method="PUT", path=path)
        await self._transfer(
            "PUT",
            capability,
            content=payload,
            extra_headers={"Content-Type": "application/octet-stream"},
        )
        return path.lstrip("/")

    async def delete(self, *, path: str) -> bool:
        try:
            capability = await self.sign(method="DELETE", path=path)
            response = await self._transfer("DELETE", capability)
        except MediaTransferError as exc:
            logger.warning("media delete failed", extra={"path": path, "detail": str(exc)})
            return False
        return bool(response.json().get("success", False))

    async def _transfer(
        self,
        method: str,
        capability: Capability,
        *,
        content: bytes | None = None,
        extra_headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        headers = capability.headers()
        if extra_headers:
            headers.update(extra_headers)
        try:
            response = await self._client.request(method, capability.path, headers=headers, content=content)
        except httpx.HTTPError as exc:
            raise MediaTransferError(f"{method} {capability.path} failed: {exc}") from exc

        if response.status_code in (401, 403):
            raise CapabilityDeniedError(
                f"{method} {capability.path} denied: {response.status_code} {_detail(response)}",
                status_code=response.status_code,
            )
        if response.status_code >= 400:
            raise MediaTransferError(
                f"{method} {capability.path} failed: {response.status_code} {_detail(response)}",
                status_code=response.status_code,
            )
        return response


def _absolute(path: str) -> str:
    return "/" + path.lstrip("/")


def _detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return response.reason_phrase
