"""API integration tests."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from study_pipeline.api import dependencies as deps
from study_pipeline.app import app
from study_pipeline.gateway import GenerationRequest, TransportAttempt
from study_pipeline.storage.task_state import UploadTaskState


class EchoBoundary:
    """Answers chat with the last message and transcription with the request transport."""

    def __init__(self) -> None:
        self.requests: list[GenerationRequest] = []

    async def send(self, request: GenerationRequest) -> TransportAttempt:
        self.requests.append(request)
        if request.kind.value == "chat":
            return TransportAttempt(request=request, payload={"content": request.messages[-1].content})
        return TransportAttempt(request=request, payload={"text": f"via {request.transport.value}"})


@pytest.fixture
def client() -> TestClient:
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def boundary() -> EchoBoundary:
    fake = EchoBoundary()
    deps._BOUNDARY = fake
    return fake


def test_health(client: TestClient) -> None:
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_upload_flow(client: TestClient) -> None:
    resp = client.post(
        "/uploads",
        files={"file": ("notes.txt", b"cell biology", "text/plain")},
        headers={"X-User-Id": "u1"},
    )
    assert resp.status_code == 200
    payload = resp.json()
    assert payload["storage_path"].startswith("u1/")
    assert payload["url"].startswith("memory://")
    assert payload["size"] == payload["original_size"] == 12


def test_upload_without_user_is_rejected(client: TestClient) -> None:
    resp = client.post("/uploads", files={"file": ("notes.txt", b"x", "text/plain")})
    assert resp.status_code == 400
    assert resp.json() == {
        "kind": "validation",
        "code": "IDENTITY_REQUIRED",
        "message": "A user id is required to upload files.",
        "retryable": False,
    }


def test_upload_status_and_discard(client: TestClient) -> None:
    assert client.get("/uploads/task-1").status_code == 404

    state = UploadTaskState(
        file_id="task-1",
        file_name="lecture.m4a",
        total_size=12,
        chunk_size=5,
        total_chunks=3,
        storage_path="u1/lecture.m4a",
        uploaded_chunks=[0],
    )
    deps.get_task_state_store().save("task-1", state)

    resp = client.get("/uploads/task-1")
    assert resp.status_code == 200
    assert resp.json()["uploaded_chunks"] == [0]

    assert client.delete("/uploads/task-1").status_code == 200
    assert client.get("/uploads/task-1").status_code == 404
    assert client.delete("/uploads/task-1").status_code == 404


def test_chat_counts_usage(client: TestClient, boundary: EchoBoundary) -> None:
    resp = client.post(
        "/generate/chat",
        json={"messages": [{"role": "user", "content": "Explain osmosis"}]},
        headers={"X-User-Id": "u1"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"content": "Explain osmosis"}

    quota = client.get("/quota/u1").json()
    assert quota["used"] == 1
    assert quota["remaining"] == quota["limit"] - 1


def test_transcription_by_storage_path(client: TestClient, boundary: EchoBoundary) -> None:
    resp = client.post("/generate/transcription", data={"storage_path": "u1/rec.webm"})
    assert resp.status_code == 200
    assert resp.json() == {"text": "via storage_ref"}


def test_transcription_inline_upload(client: TestClient, boundary: EchoBoundary) -> None:
    resp = client.post(
        "/generate/transcription",
        files={"audio": ("rec.webm", b"\x1a\x45\xdf\xa3", "audio/webm")},
        headers={"X-User-Id": "u1"},
    )
    assert resp.status_code == 200
    assert resp.json() == {"text": "via inline"}


def test_daily_limit_maps_to_429(monkeypatch: pytest.MonkeyPatch, boundary: EchoBoundary) -> None:
    monkeypatch.setenv("STDP_DEFAULT_DAILY_LIMIT", "0")
    with TestClient(app) as client:
        resp = client.post(
            "/generate/chat",
            json={"messages": [{"role": "user", "content": "hi"}]},
            headers={"X-User-Id": "u1"},
        )
    assert resp.status_code == 429
    body = resp.json()
    assert body["code"] == "DAILY_LIMIT_REACHED"
    assert body["remaining"] == 0
    assert "X-RateLimit-Reset" in resp.headers
    assert boundary.requests == []


def test_generation_requires_configuration(client: TestClient) -> None:
    resp = client.post("/generate/chat", json={"messages": [{"role": "user", "content": "hi"}]})
    assert resp.status_code == 503


def test_metrics(client: TestClient) -> None:
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert "stdp_uploads" in resp.text
