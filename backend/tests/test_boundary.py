"""Tests for the HTTP generation boundary."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from study_pipeline.core.errors import ErrorKind
from study_pipeline.gateway.boundary import HttpGenerationBoundary
from study_pipeline.gateway.types import ChatMessage, GenerationRequest, Transport

URL = "https://proj.supabase.co/functions/v1/ai-generate"


def _boundary(handler) -> HttpGenerationBoundary:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpGenerationBoundary(URL, "anon-key", client=client)


def _chat() -> GenerationRequest:
    return GenerationRequest.chat([ChatMessage(role="user", content="hi")], model="gpt-4o-mini", temperature=0.7)


@pytest.mark.asyncio
async def test_inline_audio_body_and_success() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        assert request.headers["authorization"] == "Bearer anon-key"
        return httpx.Response(200, json={"text": "hello world"})

    attempt = await _boundary(handler).send(GenerationRequest.inline_audio(b"\x01\x02", "audio/webm"))

    assert attempt.ok and attempt.payload == {"text": "hello world"}
    assert bodies == [{"type": "transcription", "audioBase64": "AQI=", "mimeType": "audio/webm"}]


@pytest.mark.asyncio
async def test_storage_reference_body() -> None:
    request = GenerationRequest.stored_audio("u1/rec.webm", "audio/webm")
    assert request.transport is Transport.STORAGE_REF
    assert request.to_body() == {"type": "transcription", "storagePath": "u1/rec.webm", "mimeType": "audio/webm"}


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "code"),
    [
        (httpx.Response(413, text="Request Entity Too Large"), "PAYLOAD_TOO_LARGE"),
        (httpx.Response(502, html="<html>Bad Gateway</html>"), "NON_JSON_RESPONSE"),
        (httpx.Response(200, json=["not", "an", "object"]), "MALFORMED_RESPONSE"),
    ],
)
async def test_pre_backend_rejections_escalate(response: httpx.Response, code: str) -> None:
    attempt = await _boundary(lambda request: response).send(GenerationRequest.inline_audio(b"x", "audio/webm"))
    assert attempt.error.code == code
    assert attempt.should_escalate


@pytest.mark.asyncio
async def test_storage_reference_rejection_does_not_escalate() -> None:
    boundary = _boundary(lambda request: httpx.Response(413, text="too large"))
    attempt = await boundary.send(GenerationRequest.stored_audio("u1/rec.webm"))
    assert attempt.error.code == "PAYLOAD_TOO_LARGE"
    assert not attempt.should_escalate


@pytest.mark.asyncio
async def test_quota_code_becomes_rate_limit_envelope() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            429,
            json={
                "code": "DAILY_LIMIT_REACHED",
                "error": "Daily limit reached",
                "limit": 30,
                "remaining": 0,
                "resetAt": "2024-03-15T00:00:00Z",
            },
        )

    envelope = (await _boundary(handler).send(_chat())).error
    assert envelope.kind is ErrorKind.RATE_LIMIT
    assert (envelope.limit, envelope.remaining) == (30, 0)
    assert envelope.reset_at == datetime(2024, 3, 15, tzinfo=timezone.utc)
    assert not envelope.retryable


@pytest.mark.asyncio
async def test_network_failures_are_retryable_transport() -> None:
    def timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    def refused(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    for handler, code in ((timeout, "TIMEOUT"), (refused, "NETWORK")):
        envelope = (await _boundary(handler).send(_chat())).error
        assert envelope.kind is ErrorKind.TRANSPORT
        assert envelope.code == code
        assert envelope.retryable


@pytest.mark.asyncio
async def test_server_and_client_errors() -> None:
    upstream = await _boundary(lambda r: httpx.Response(500, json={"error": "OpenAI failed"})).send(_chat())
    assert upstream.error.code == "UPSTREAM_ERROR" and upstream.error.retryable

    invalid = await _boundary(lambda r: httpx.Response(400, json={"error": "messages required"})).send(_chat())
    assert invalid.error.kind is ErrorKind.VALIDATION
    assert not invalid.error.retryable


@pytest.mark.asyncio
async def test_error_body_without_status_falls_back_to_text_classification() -> None:
    attempt = await _boundary(lambda r: httpx.Response(200, json={"error": "ACCOUNT_LIMIT reached"})).send(_chat())
    assert attempt.error.code == "ACCOUNT_LIMIT_REACHED"
