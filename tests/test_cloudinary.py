"""Unit tests for the Cloudinary blob store adapter."""

from __future__ import annotations

import hashlib
from urllib.parse import parse_qs

import httpx
import pytest

from core.cloudinary import (
    CloudinaryStore,
    MediaUpload,
    UploadConstraints,
    asset_public_id,
    extract_public_id,
    sign_params,
)
from core.errors import DeleteFailed, MalformedReference, UploadFailed, UploadRejected
from fakes import jpeg, reference

TIMESTAMP = 1700000000


class Recorder:
    """MockTransport handler returning queued responses and keeping requests."""

    def __init__(self, *responses: httpx.Response | Exception) -> None:
        self.responses = list(responses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0) if self.responses else httpx.Response(200, json={})
        if isinstance(item, Exception):
            raise item
        return item


def make_store(recorder: Recorder) -> CloudinaryStore:
    return CloudinaryStore(
        cloud_name="demo",
        api_key="key",
        api_secret="secret",
        folder="masters-academy",
        transport=httpx.MockTransport(recorder),
        clock=lambda: TIMESTAMP,
    )


def _form(request: httpx.Request) -> dict[str, list[str]]:
    return parse_qs(request.content.decode("utf-8"))


@pytest.mark.parametrize(
    ("ref", "expected"),
    [
        ("https://res.cloudinary.com/demo/image/upload/v1/masters-academy/abc123.jpg", "abc123"),
        ("https://host/a/b/folder/abc123.png", "abc123"),
        ("https://host/folder/abc123.jpg?version=2", "abc123"),
        ("https://host/folder/archive.tar.gz", "archive.tar"),
        ("folder/abc123.webp", "abc123"),
    ],
)
def test_extract_public_id(ref: str, expected: str) -> None:
    assert extract_public_id(ref) == expected


@pytest.mark.parametrize(
    "ref",
    [
        "https://host/folder/abc123",
        "https://host/folder/",
        "https://host",
        "",
        "https://host/folder/.jpg",
    ],
)
def test_extract_public_id_rejects_malformed(ref: str) -> None:
    with pytest.raises(MalformedReference):
        extract_public_id(ref)


@pytest.mark.parametrize(
    ("ref", "expected"),
    [
        ("https://res.cloudinary.com/demo/image/upload/v1/masters-academy/abc123.jpg", "masters-academy/abc123"),
        ("https://res.cloudinary.com/demo/image/upload/v1/legacy-folder/abc123.jpg", "legacy-folder/abc123"),
        ("https://res.cloudinary.com/demo/image/upload/c_limit,h_800/v17/a/b/abc123.png", "a/b/abc123"),
        ("https://res.cloudinary.com/demo/image/upload/c_limit,w_1200/courses/abc123.png", "courses/abc123"),
        ("https://res.cloudinary.com/demo/image/upload/abc123.jpg", "abc123"),
    ],
)
def test_asset_public_id_keeps_reference_folder(ref: str, expected: str) -> None:
    assert asset_public_id(ref) == expected


def test_asset_public_id_requires_upload_url() -> None:
    with pytest.raises(MalformedReference):
        asset_public_id("https://host/a/b/folder/abc123.png")


def test_sign_params_matches_cloudinary_scheme() -> None:
    params = {
        "timestamp": "1700000000",
        "folder": "masters-academy",
        "allowed_formats": ["jpg", "png"],
        "empty": "",
    }
    expected = hashlib.sha1(
        b"allowed_formats=jpg,png&folder=masters-academy&timestamp=1700000000secret"
    ).hexdigest()
    assert sign_params(params, "secret") == expected


def test_transformation_string() -> None:
    assert UploadConstraints().transformation() == "c_limit,h_800,q_auto,w_1200"


@pytest.mark.asyncio
async def test_upload_returns_secure_url() -> None:
    url = reference("abc123")
    recorder = Recorder(httpx.Response(200, json={"public_id": "masters-academy/abc123", "secure_url": url}))
    store = make_store(recorder)

    result = await store.upload(jpeg(), UploadConstraints())

    assert result == url
    request = recorder.requests[0]
    assert request.url.path == "/v1_1/demo/image/upload"
    body = request.content
    assert b'name="folder"' in body
    assert b"masters-academy" in body
    assert b"c_limit,h_800,q_auto,w_1200" in body
    assert b'name="signature"' in body
    assert b'name="file"; filename="cover.jpg"' in body


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "media",
    [
        MediaUpload(data=b"%PDF-1.4", mime_type="application/pdf", byte_count=8),
        MediaUpload(data=b"", mime_type="image/png", byte_count=0),
        MediaUpload(data=b"\x00" * 10, mime_type=None, byte_count=10),
        MediaUpload(data=b"\x00" * 10, mime_type="image/png", byte_count=11 * 1024 * 1024),
    ],
)
async def test_upload_rejected_locally_without_network(media: MediaUpload) -> None:
    recorder = Recorder()
    store = make_store(recorder)

    with pytest.raises(UploadRejected):
        await store.upload(media, UploadConstraints())

    assert recorder.requests == []


@pytest.mark.asyncio
async def test_upload_rejects_oversized_bytes() -> None:
    recorder = Recorder()
    store = make_store(recorder)
    constraints = UploadConstraints(max_bytes=100)

    with pytest.raises(UploadRejected, match="too large"):
        await store.upload(jpeg(size=101), constraints)

    assert recorder.requests == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(400, json={"error": {"message": "Invalid image file"}}),
        httpx.Response(420, json={"error": {"message": "Rate Limit Exceeded"}}),
        httpx.Response(200, content=b"not json"),
        httpx.Response(200, json={"public_id": "x"}),
        httpx.Response(200, json={"secure_url": "https://evil.example.com/x.jpg"}),
    ],
)
async def test_upload_remote_failures(response: httpx.Response) -> None:
    store = make_store(Recorder(response))

    with pytest.raises(UploadFailed):
        await store.upload(jpeg(), UploadConstraints())


@pytest.mark.asyncio
async def test_upload_timeout_is_upload_failed() -> None:
    store = make_store(Recorder(httpx.ReadTimeout("timed out")))

    with pytest.raises(UploadFailed, match="timed out"):
        await store.upload(jpeg(), UploadConstraints())


@pytest.mark.asyncio
async def test_delete_targets_folder_public_id() -> None:
    recorder = Recorder(httpx.Response(200, json={"result": "ok"}))
    store = make_store(recorder)

    await store.delete(reference("abc123"))

    request = recorder.requests[0]
    assert request.url.path == "/v1_1/demo/image/destroy"
    form = _form(request)
    assert form["public_id"] == ["masters-academy/abc123"]
    assert form["api_key"] == ["key"]
    assert form["timestamp"] == [str(TIMESTAMP)]
    expected = sign_params(
        {"public_id": "masters-academy/abc123", "invalidate": "true", "timestamp": str(TIMESTAMP)},
        "secret",
    )
    assert form["signature"] == [expected]


@pytest.mark.asyncio
async def test_delete_targets_folder_of_the_reference() -> None:
    recorder = Recorder(httpx.Response(200, json={"result": "ok"}))
    store = make_store(recorder)

    await store.delete("https://res.cloudinary.com/demo/image/upload/v1/legacy-folder/abc123.jpg")

    assert _form(recorder.requests[0])["public_id"] == ["legacy-folder/abc123"]


@pytest.mark.asyncio
async def test_delete_of_non_cloudinary_url_makes_no_call() -> None:
    recorder = Recorder()
    store = make_store(recorder)

    with pytest.raises(MalformedReference):
        await store.delete("https://elsewhere.example/images/abc123.jpg")

    assert recorder.requests == []


@pytest.mark.asyncio
async def test_delete_is_idempotent() -> None:
    recorder = Recorder(
        httpx.Response(200, json={"result": "ok"}),
        httpx.Response(200, json={"result": "not found"}),
    )
    store = make_store(recorder)

    await store.delete(reference("abc123"))
    await store.delete(reference("abc123"))

    assert len(recorder.requests) == 2


@pytest.mark.asyncio
async def test_delete_of_unknown_reference_succeeds() -> None:
    store = make_store(Recorder(httpx.Response(404, json={"error": {"message": "Resource not found"}})))

    await store.delete(reference("never-existed"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(500, text="internal error"),
        httpx.Response(200, json={"result": "error"}),
        httpx.ConnectError("connection refused"),
    ],
)
async def test_delete_failures(response: httpx.Response | Exception) -> None:
    store = make_store(Recorder(response))

    with pytest.raises(DeleteFailed):
        await store.delete(reference("abc123"))


@pytest.mark.asyncio
async def test_delete_malformed_reference_makes_no_call() -> None:
    recorder = Recorder()
    store = make_store(recorder)

    with pytest.raises(MalformedReference):
        await store.delete("https://res.cloudinary.com/demo/image/upload/noext")

    assert recorder.requests == []


@pytest.mark.asyncio
async def test_ping() -> None:
    recorder = Recorder(httpx.Response(200, json={"status": "ok"}), httpx.Response(401, json={}))
    store = make_store(recorder)

    assert await store.ping() is True
    assert await store.ping() is False
    assert recorder.requests[0].headers["authorization"].startswith("Basic ")


def test_incomplete_credentials_fail_fast() -> None:
    with pytest.raises(RuntimeError):
        CloudinaryStore(cloud_name="demo", api_key="", api_secret="secret")
