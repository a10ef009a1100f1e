"""Storage-owning process: the only component that touches the media root."""

from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
import logging
from pathlib import PurePosixPath

from fastapi import FastAPI, HTTPException, Request, Response
from pydantic import BaseModel, Field

from pxlcensor.storage.atomic import AtomicFileStore
from pxlcensor.storage.signing import (
    DEFAULT_TTL_SECONDS,
    EXPIRES_HEADER,
    SIGNATURE_HEADER,
    CapabilitySigner,
)

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}
# Headroom over the upload limit for multipart-free raw bodies.
BODY_OVERHEAD_BYTES = 1024 * 1024


class SignRequest(BaseModel):
    method: str = Field(pattern=r"^(GET|PUT|DELETE|get|put|delete)$")
    path: str = Field(min_length=2, max_length=1024)
    expires_in: int = Field(default=DEFAULT_TTL_SECONDS, ge=1, le=24 * 3600)


class SignResponse(BaseModel):
    url: str
    headers: dict[str, str]


class StoredResponse(BaseModel):
    success: bool
    path: str


def build_media_app(
    *,
    store: AtomicFileStore,
    signer: CapabilitySigner,
    run_id: str,
    role: str = "media",
    max_body_bytes: int | None = None,
) -> FastAPI:
    logger = logging.getLogger("runtime")
    body_limit = None if max_body_bytes is None else max_body_bytes + BODY_OVERHEAD_BYTES

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        del app
        swept = await asyncio.to_thread(store.sweep_temp_files)
        if swept:
            logger.warning(
                "interrupted writes cleaned up",
                extra={"role": role, "service": role, "run_id": run_id, "detail": f"temp_files={swept}"},
            )
        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id, "path": str(store.root)},
        )
        yield
        logger.info("role stopped", extra={"role": role, "service": role, "run_id": run_id})

    app = FastAPI(title="pxlcensor-media", version="0.1.0", lifespan=lifespan)

    def _authorize(request: Request) -> None:
        decision = signer.verify(
            method=request.method,
            path=request.url.path,
            signature=request.headers.get(SIGNATURE_HEADER),
            expires_at_ms=request.headers.get(EXPIRES_HEADER),
        )
        if decision.allowed:
            return
        logger.warning(
            "capability rejected",
            extra={"role": role, "path": request.url.path, "detail": f"{request.method} {decision.reason}"},
        )
        if decision.reason == "missing":
            raise HTTPException(status_code=401, detail="missing signature")
        if decision.reason == "expired":
            raise HTTPException(status_code=403, detail="signature expired")
        raise HTTPException(status_code=403, detail="invalid signature")

    async def _store(area: str, path: str, request: Request) -> StoredResponse:
        _authorize(request)
        payload = await _read_body(request, limit=body_limit)
        key = f"{area}/{path}"
        try:
            await asyncio.to_thread(store.write, key, payload)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        logger.info("media stored", extra={"role": role, "path": key, "detail": f"bytes={len(payload)}"})
        return StoredResponse(success=True, path=key)

    async def _read(area: str, path: str) -> Response:
        key = f"{area}/{path}"
        try:
            payload = await asyncio.to_thread(store.read, key)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        if payload is None:
            raise HTTPException(status_code=404, detail="not found")
        media_type = CONTENT_TYPES.get(PurePosixPath(path).suffix.lower(), "application/octet-stream")
        return Response(content=payload, media_type=media_type)

    async def _delete(area: str, path: str, request: Request) -> StoredResponse:
        _authorize(request)
        key = f"{area}/{path}"
        deleted = await asyncio.to_thread(store.delete, key)
        return StoredResponse(success=deleted, path=key)

    @app.get("/health", tags=["System"])
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": role}

    # Internal network only; anyone who can reach it can mint capabilities.
    @app.post("/sign", response_model=SignResponse, tags=["Media"])
    async def sign(request: SignRequest) -> SignResponse:
        capability = signer.issue(method=request.method, path=request.path, ttl_seconds=request.expires_in)
        return SignResponse(url=capability.path, headers=capability.headers())

    @app.put("/originals/{path:path}", response_model=StoredResponse, tags=["Media"])
    async def put_original(path: str, request: Request) -> StoredResponse:
        return await _store("originals", path, request)

    @app.put("/processed/{path:path}", response_model=StoredResponse, tags=["Media"])
    async def put_processed(path: str, request: Request) -> StoredResponse:
        return await _store("processed", path, request)

    @app.get("/originals/{path:path}", tags=["Media"])
    async def get_original(path: str, request: Request) -> Response:
        _authorize(request)
        return await _read("originals", path)

    @app.get("/processed/{path:path}", tags=["Media"])
    async def get_processed(path: str) -> Response:
        return await _read("processed", path)

    @app.delete("/originals/{path:path}", response_model=StoredResponse, tags=["Media"])
    async def delete_original(path: str, request: Request) -> StoredResponse:
        return await _delete("originals", path, request)

    @app.delete("/processed/{path:path}", response_model=StoredResponse, tags=["Media"])
    async def delete_processed(path: str, request: Request) -> StoredResponse:
        return await _delete("processed", path, request)

    return app


async def _read_body(request: Request, *, limit: int | None) -> bytes:
    if limit is None:
        return await request.body()
    declared = request.headers.get("content-length")
    if declared is not None and declared.isdigit() and int(declared) > limit:
        raise HTTPException(status_code=413, detail="payload too large")
    # Chunked bodies carry no length up front.
    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise HTTPException(status_code=413, detail="payload too large")
    return bytes(body)
