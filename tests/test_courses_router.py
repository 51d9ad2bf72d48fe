"""HTTP-level tests for the course endpoints using in-memory collaborators."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from core.connection import ConnectionCache
from fakes import FakeBlobStore, FakeRepository, connected_cache, reference
from main import app
from media.lifecycle import MediaLifecycle

FORM = {
    "title": "Algebra I",
    "description": "Foundations",
    "category": "math",
    "level": "beginner",
    "features": '["video lessons"]',
    "instructor": '{"name": "A. Teacher"}',
}
JPEG = b"\xff\xd8\xff\xe0" + b"\x00" * 1020


@pytest.fixture
def state():
    blobs = FakeBlobStore([reference("r1"), reference("r2")])
    repo = FakeRepository()
    app.state.lifecycle = MediaLifecycle(connected_cache(), blobs, repo)
    return blobs, repo


@pytest.fixture
def client(state) -> TestClient:
    return TestClient(app)


def test_health(client: TestClient) -> None:
    resp = client.get("/api/health")

    assert resp.status_code == 200
    assert resp.json()["status"] == "OK"


def test_create_course_with_image(client: TestClient, state) -> None:
    blobs, repo = state

    resp = client.post("/api/courses", data=FORM, files={"image": ("cover.jpg", JPEG, "image/jpeg")})

    assert resp.status_code == 201
    body = resp.json()
    assert body["success"] is True
    assert body["data"]["image"] == reference("r1")
    assert body["data"]["features"] == ["video lessons"]
    assert len(repo.rows) == 1


def test_create_course_without_image_is_rejected(client: TestClient, state) -> None:
    resp = client.post("/api/courses", data=FORM)

    assert resp.status_code == 400
    assert resp.json()["error"] == "MissingMedia"


def test_create_course_with_oversized_image(client: TestClient, state) -> None:
    blobs, repo = state
    big = b"\xff\xd8" + b"\x00" * (11 * 1024 * 1024)

    resp = client.post("/api/courses", data=FORM, files={"image": ("big.jpg", big, "image/jpeg")})

    assert resp.status_code == 400
    assert resp.json()["error"] == "UploadRejected"
    assert blobs.network_calls == 0
    assert repo.calls == []


def test_create_course_with_non_image(client: TestClient, state) -> None:
    blobs, _ = state

    resp = client.post("/api/courses", data=FORM, files={"image": ("doc.pdf", b"%PDF-1.4", "application/pdf")})

    assert resp.status_code == 400
    assert resp.json()["error"] == "UploadRejected"
    assert blobs.network_calls == 0


def test_create_course_invalid_json_field(client: TestClient, state) -> None:
    resp = client.post(
        "/api/courses",
        data={**FORM, "features": "not json"},
        files={"image": ("cover.jpg", JPEG, "image/jpeg")},
    )

    assert resp.status_code == 422
    assert resp.json()["error"] == "ValidationError"


def test_update_course_replaces_image(client: TestClient, state) -> None:
    blobs, repo = state
    existing = repo.seed(title="Algebra I", image=reference("old"))

    resp = client.put(
        f"/api/courses/{existing['id']}",
        data={"title": "Algebra II"},
        files={"image": ("cover.png", b"\x89PNG\r\n\x1a\n", "image/png")},
    )

    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["title"] == "Algebra II"
    assert data["image"] == reference("r1")
    assert blobs.deletes == [reference("old")]


def test_update_missing_course(client: TestClient, state) -> None:
    resp = client.put("/api/courses/404", data={"title": "X"})

    assert resp.status_code == 404
    assert resp.json()["error"] == "NotFound"


def test_delete_course(client: TestClient, state) -> None:
    blobs, repo = state
    existing = repo.seed(title="Algebra I", image=reference("old"))

    resp = client.delete(f"/api/courses/{existing['id']}")

    assert resp.status_code == 200
    assert repo.rows == {}
    assert blobs.deletes == [reference("old")]


def test_get_and_list_courses(client: TestClient, state) -> None:
    _, repo = state
    existing = repo.seed(title="Algebra I", image=reference("old"))

    one = client.get(f"/api/courses/{existing['id']}")
    page = client.get("/api/courses", params={"page": 1, "limit": 10})

    assert one.json()["data"]["title"] == "Algebra I"
    assert page.json()["data"]["pagination"] == {"current": 1, "pages": 1, "total": 1}


def test_store_unavailable_is_503(client: TestClient, state) -> None:
    blobs, repo = state

    async def connect() -> object:
        raise OSError("connection refused")

    app.state.lifecycle = MediaLifecycle(ConnectionCache(connect, timeout_s=0.5), blobs, repo)

    resp = client.get("/api/courses/1")

    assert resp.status_code == 503
    assert resp.json() == {
        "success": False,
        "error": "Unavailable",
        "message": "Could not connect to the database.",
    }


def test_oversized_image_is_rejected_while_database_is_down(client: TestClient, state) -> None:
    blobs, repo = state
    connects: list[str] = []

    async def connect() -> object:
        connects.append("connect")
        raise OSError("connection refused")

    app.state.lifecycle = MediaLifecycle(ConnectionCache(connect, timeout_s=0.5), blobs, repo)
    big = b"\xff\xd8" + b"\x00" * (11 * 1024 * 1024)

    resp = client.post("/api/courses", data=FORM, files={"image": ("big.jpg", big, "image/jpeg")})

    assert resp.status_code == 400
    assert resp.json()["error"] == "UploadRejected"
    assert connects == []
