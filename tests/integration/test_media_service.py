from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest
from fastapi.testclient import TestClient

from pxlcensor.clients.media import HttpMediaClient
from pxlcensor.domain.errors import CapabilityDeniedError, MediaTransferError
from pxlcensor.media.http_app import BODY_OVERHEAD_BYTES, build_media_app
from pxlcensor.storage.atomic import AtomicFileStore
from pxlcensor.storage.signing import CapabilitySigner

SECRET = "integration-secret"


def _client(tmp_path: Path) -> TestClient:
    app = build_media_app(
        store=AtomicFileStore(root=tmp_path),
        signer=CapabilitySigner(secret=SECRET),
        run_id="run-media",
    )
    return TestClient(app)


def _sign(client: TestClient, method: str, path: str, expires_in: int = 300) -> dict[str, str]:
    response = client.post("/sign", json={"method": method, "path": path, "expires_in": expires_in})
    assert response.status_code == 200
    body = response.json()
    assert body["url"] == path
    return body["headers"]


@pytest.mark.integration
def test_signed_put_then_signed_get_round_trip(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        put_headers = _sign(client, "PUT", "/originals/2024/01/a.jpg")
        stored = client.put("/originals/2024/01/a.jpg", content=b"jpeg", headers=put_headers)
        assert stored.status_code == 200
        assert stored.json() == {"success": True, "path": "originals/2024/01/a.jpg"}

        get_headers = _sign(client, "GET", "/originals/2024/01/a.jpg")
        fetched = client.get("/originals/2024/01/a.jpg", headers=get_headers)
        assert fetched.status_code == 200
        assert fetched.content == b"jpeg"
        assert fetched.headers["content-type"] == "image/jpeg"

    assert (tmp_path / "originals/2024/01/a.jpg").read_bytes() == b"jpeg"


@pytest.mark.integration
def test_missing_signature_is_unauthorized(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        response = client.put("/originals/a.jpg", content=b"x")

    assert response.status_code == 401


@pytest.mark.integration
def test_capability_cannot_be_replayed_for_other_method_or_path(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        put_headers = _sign(client, "PUT", "/originals/a.jpg")

        other_method = client.get("/originals/a.jpg", headers=put_headers)
        other_path = client.put("/originals/b.jpg", content=b"x", headers=put_headers)

    assert other_method.status_code == 403
    assert other_method.json()["detail"] == "invalid signature"
    assert other_path.status_code == 403
    assert not (tmp_path / "originals/b.jpg").exists()


@pytest.mark.integration
def test_expired_capability_is_forbidden(tmp_path: Path) -> None:
    signer = CapabilitySigner(secret=SECRET)
    capability = signer.issue(method="PUT", path="/processed/a.jpg", ttl_seconds=1, now=1_000)

    with _client(tmp_path) as client:
        response = client.put("/processed/a.jpg", content=b"x", headers=capability.headers())

    assert response.status_code == 403
    assert response.json()["detail"] == "signature expired"


@pytest.mark.integration
def test_processed_files_are_public_but_originals_are_not(tmp_path: Path) -> None:
    store = AtomicFileStore(root=tmp_path)
    store.write("processed/p.png", b"png")
    store.write("originals/o.png", b"secret")

    with _client(tmp_path) as client:
        public = client.get("/processed/p.png")
        private = client.get("/originals/o.png")
        missing = client.get("/processed/none.png")

    assert public.status_code == 200
    assert public.content == b"png"
    assert public.headers["content-type"] == "image/png"
    assert private.status_code == 401
    assert missing.status_code == 404


@pytest.mark.integration
def test_signed_delete_removes_file(tmp_path: Path) -> None:
    AtomicFileStore(root=tmp_path).write("processed/d.jpg", b"x")

    with _client(tmp_path) as client:
        headers = _sign(client, "DELETE", "/processed/d.jpg")
        first = client.delete("/processed/d.jpg", headers=headers)
        second = client.delete("/processed/d.jpg", headers=headers)

    assert first.json() == {"success": True, "path": "processed/d.jpg"}
    assert second.json() == {"success": False, "path": "processed/d.jpg"}
    assert not (tmp_path / "processed/d.jpg").exists()


@pytest.mark.integration
def test_sign_rejects_unsupported_method(tmp_path: Path) -> None:
    with _client(tmp_path) as client:
        response = client.post("/sign", json={"method": "POST", "path": "/originals/a.jpg"})

    assert response.status_code == 422


@pytest.mark.integration
def test_http_media_client_talks_to_media_app(tmp_path: Path) -> None:
    app = build_media_app(
        store=AtomicFileStore(root=tmp_path),
        signer=CapabilitySigner(secret=SECRET),
        run_id="run-client",
    )

    async def _run() -> None:
        media = HttpMediaClient(base_url="http://media", transport=httpx.ASGITransport(app=app))
        try:
            assert await media.upload(path="originals/x/y.jpg", payload=b"bytes") == "originals/x/y.jpg"
            assert await media.download(path="originals/x/y.jpg") == b"bytes"

            capability = await media.sign(method="get", path="originals/x/y.jpg", ttl_seconds=60)
            assert capability.method == "GET"
            assert capability.path == "/originals/x/y.jpg"

            with pytest.raises(MediaTransferError) as missing:
                await media.download(path="originals/none.jpg")
            assert missing.value.status_code == 404

            assert await media.delete(path="originals/x/y.jpg") is True
        finally:
            await media.aclose()

    asyncio.run(_run())
    assert not (tmp_path / "originals/x/y.jpg").exists()


@pytest.mark.integration
def test_http_media_client_surfaces_denied_capabilities(tmp_path: Path) -> None:
    signing_app = build_media_app(
        store=AtomicFileStore(root=tmp_path),
        signer=CapabilitySigner(secret="other-secret"),
        run_id="run-signer",
    )
    storage_app = build_media_app(
        store=AtomicFileStore(root=tmp_path),
        signer=CapabilitySigner(secret=SECRET),
        run_id="run-storage",
    )

    class _SplitTransport(httpx.AsyncBaseTransport):
        # Capabilities minted with the wrong secret reach the real store.
        async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
            target = signing_app if request.url.path == "/sign" else storage_app
            return await httpx.ASGITransport(app=target).handle_async_request(request)

    async def _run() -> None:
        media = HttpMediaClient(base_url="http://media", transport=_SplitTransport())
        try:
            with pytest.raises(CapabilityDeniedError):
                await media.upload(path="originals/a.jpg", payload=b"x")
        finally:
            await media.aclose()

    asyncio.run(_run())


@pytest.mark.integration
def test_startup_removes_temp_files_from_interrupted_writes(tmp_path: Path) -> None:
    (tmp_path / "processed").mkdir()
    (tmp_path / "processed/a.jpg").write_bytes(b"complete")
    leftover = tmp_path / "processed/.b.jpg.01HX0000000000000000000000.tmp"
    leftover.write_bytes(b"partial")

    with _client(tmp_path) as client:
        assert client.get("/processed/a.jpg").content == b"complete"

    assert not leftover.exists()
    assert sorted(p.name for p in (tmp_path / "processed").iterdir()) == ["a.jpg"]


def _limited_app(tmp_path: Path):
    return build_media_app(
        store=AtomicFileStore(root=tmp_path),
        signer=CapabilitySigner(secret=SECRET),
        run_id="run-media",
        max_body_bytes=0,
    )


@pytest.mark.integration
def test_oversized_upload_is_rejected_from_declared_length(tmp_path: Path) -> None:
    app = _limited_app(tmp_path)
    signer = CapabilitySigner(secret=SECRET)
    consumed: list[int] = []

    async def _body():
        for _ in range(4):
            consumed.append(1)
            yield b"x" * 1024

    async def _run() -> httpx.Response:
        headers = signer.issue(method="PUT", path="/originals/big.jpg", ttl_seconds=60).headers()
        headers["Content-Length"] = str(BODY_OVERHEAD_BYTES + 1)
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://media") as client:
            return await client.put("/originals/big.jpg", content=_body(), headers=headers)

    response = asyncio.run(_run())

    assert response.status_code == 413
    assert consumed == []
    assert not (tmp_path / "originals").exists()


@pytest.mark.integration
def test_oversized_chunked_upload_is_rejected_while_streaming(tmp_path: Path) -> None:
    app = _limited_app(tmp_path)
    signer = CapabilitySigner(secret=SECRET)
    chunk = b"x" * (256 * 1024)

    async def _body():
        for _ in range(8):
            yield chunk

    async def _run() -> httpx.Response:
        headers = signer.issue(method="PUT", path="/originals/big.jpg", ttl_seconds=60).headers()
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://media") as client:
            return await client.put("/originals/big.jpg", content=_body(), headers=headers)

    response = asyncio.run(_run())

    assert response.status_code == 413
    assert not (tmp_path / "originals").exists()
