"""Tests for the AI invocation gateway."""

from __future__ import annotations

import pytest

from study_pipeline.core.errors import (
    EmptyResultError,
    ErrorEnvelope,
    ErrorKind,
    RateLimitError,
    TransportError,
    ValidationError,
)
from study_pipeline.core.retry import RetryPolicy
from study_pipeline.gateway import AIInvocationGateway, ChatOptions, GenerationRequest, Transport, TransportAttempt
from study_pipeline.ingest.types import MediaFile
from study_pipeline.ingest.uploader import ChunkedUploadManager
from study_pipeline.quota.ledger import MemoryUsageLedger
from study_pipeline.quota.limiter import RateLimiter
from study_pipeline.storage.blob import MemoryBlobStore
from study_pipeline.storage.task_state import MemoryTaskStateStore
from study_pipeline.utils.time import utc_date

MIB = 1024 * 1024


def _envelope(code: str, kind: ErrorKind = ErrorKind.TRANSPORT, retryable: bool = True) -> ErrorEnvelope:
    return ErrorEnvelope(kind=kind, code=code, message=f"upstream said {code}", retryable=retryable)


class ScriptedBoundary:
    """Replies from a queue; each entry is a payload dict or an ErrorEnvelope."""

    def __init__(self, *replies) -> None:
        self.replies = list(replies)
        self.requests: list[GenerationRequest] = []

    async def send(self, request: GenerationRequest) -> TransportAttempt:
        self.requests.append(request)
        reply = self.replies.pop(0)
        if isinstance(reply, ErrorEnvelope):
            return TransportAttempt(request=request, error=reply)
        return TransportAttempt(request=request, payload=reply)


def _gateway(boundary, no_sleep, limiter=None) -> tuple[AIInvocationGateway, MemoryBlobStore]:
    store = MemoryBlobStore()
    uploader = ChunkedUploadManager(store, MemoryTaskStateStore(), sleep=no_sleep)
    gateway = AIInvocationGateway(
        boundary,
        uploader,
        limiter,
        retry_policy=RetryPolicy(attempts=3),
        sleep=no_sleep,
    )
    return gateway, store


def _audio(size: int) -> MediaFile:
    return MediaFile("lecture.webm", b"\x07" * size, "audio/webm")


@pytest.mark.asyncio
async def test_small_audio_goes_inline(no_sleep) -> None:
    boundary = ScriptedBoundary({"text": "photosynthesis"})
    gateway, store = _gateway(boundary, no_sleep)

    assert await gateway.invoke_transcription(_audio(1 * MIB), user_id="u1") == "photosynthesis"
    assert [r.transport for r in boundary.requests] == [Transport.INLINE]
    assert store.objects == {}


@pytest.mark.asyncio
async def test_large_audio_is_uploaded_then_referenced(no_sleep) -> None:
    boundary = ScriptedBoundary({"text": "mitosis"})
    gateway, store = _gateway(boundary, no_sleep)

    assert await gateway.invoke_transcription(_audio(3 * MIB), user_id="u1") == "mitosis"
    (request,) = boundary.requests
    assert request.transport is Transport.STORAGE_REF
    assert store.objects[request.storage_path] == b"\x07" * (3 * MIB)


@pytest.mark.asyncio
async def test_large_audio_without_user_is_rejected(no_sleep) -> None:
    boundary = ScriptedBoundary()
    gateway, _ = _gateway(boundary, no_sleep)
    with pytest.raises(ValidationError):
        await gateway.invoke_transcription(_audio(3 * MIB))
    assert boundary.requests == []


@pytest.mark.asyncio
async def test_storage_hint_always_uses_reference(no_sleep) -> None:
    boundary = ScriptedBoundary({"text": "osmosis"})
    gateway, _ = _gateway(boundary, no_sleep)

    await gateway.invoke_transcription(_audio(10), storage_path_hint="u1/existing.webm", user_id="u1")
    (request,) = boundary.requests
    assert request.transport is Transport.STORAGE_REF
    assert request.storage_path == "u1/existing.webm"


@pytest.mark.asyncio
async def test_inline_rejection_escalates_exactly_once(no_sleep) -> None:
    boundary = ScriptedBoundary(*[_envelope("NON_JSON_RESPONSE")] * 4)
    gateway, store = _gateway(boundary, no_sleep)

    with pytest.raises(TransportError) as excinfo:
        await gateway.invoke_transcription(_audio(100), user_id="u1")
    assert excinfo.value.code == "NON_JSON_RESPONSE"
    # One inline attempt, then the storage-reference request under the retry policy.
    assert [r.transport for r in boundary.requests] == [Transport.INLINE] + [Transport.STORAGE_REF] * 3
    assert no_sleep.delays == [1.0, 2.0]
    assert len(store.objects) == 1


@pytest.mark.asyncio
async def test_chat_rejected_before_backend_is_retried(no_sleep) -> None:
    boundary = ScriptedBoundary(_envelope("NON_JSON_RESPONSE"), {"content": "hi"})
    gateway, _ = _gateway(boundary, no_sleep)

    assert await gateway.invoke_chat([{"role": "user", "content": "hello"}]) == "hi"
    assert len(boundary.requests) == 2
    assert no_sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_storage_reference_rejection_is_retried(no_sleep) -> None:
    boundary = ScriptedBoundary(_envelope("NON_JSON_RESPONSE"), {"text": "hello"})
    gateway, store = _gateway(boundary, no_sleep)

    assert await gateway.invoke_transcription(None, storage_path_hint="u1/a.webm") == "hello"
    assert [r.transport for r in boundary.requests] == [Transport.STORAGE_REF] * 2
    assert store.objects == {}


@pytest.mark.asyncio
async def test_escalation_recovers_through_storage(no_sleep) -> None:
    boundary = ScriptedBoundary(_envelope("PAYLOAD_TOO_LARGE"), {"text": "recovered"})
    gateway, _ = _gateway(boundary, no_sleep)
    assert await gateway.invoke_transcription(_audio(100), user_id="u1") == "recovered"


@pytest.mark.asyncio
async def test_escalation_without_user_cannot_fall_back(no_sleep) -> None:
    boundary = ScriptedBoundary(_envelope("MALFORMED_RESPONSE"))
    gateway, _ = _gateway(boundary, no_sleep)
    with pytest.raises(ValidationError) as excinfo:
        await gateway.invoke_transcription(_audio(100))
    assert excinfo.value.code == "PAYLOAD_TOO_LARGE"
    assert len(boundary.requests) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("text", ["", "   \n"])
async def test_blank_transcription_is_empty_result(no_sleep, text: str) -> None:
    gateway, _ = _gateway(ScriptedBoundary({"text": text}), no_sleep)
    with pytest.raises(EmptyResultError):
        await gateway.invoke_transcription(_audio(100), user_id="u1")


@pytest.mark.asyncio
async def test_transient_failures_are_retried(no_sleep) -> None:
    boundary = ScriptedBoundary(_envelope("TIMEOUT"), _envelope("NETWORK"), {"content": "answer"})
    gateway, _ = _gateway(boundary, no_sleep)

    assert await gateway.invoke_chat([{"role": "user", "content": "hi"}]) == "answer"
    assert len(boundary.requests) == 3
    assert no_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_chat_defaults_and_empty_content(no_sleep) -> None:
    boundary = ScriptedBoundary({"content": ""}, {"choices": []})
    gateway, _ = _gateway(boundary, no_sleep)

    assert await gateway.invoke_chat([{"role": "user", "content": "hi"}]) == ""
    assert boundary.requests[0].model == "gpt-4o-mini"
    assert boundary.requests[0].temperature == 0.7
    with pytest.raises(EmptyResultError):
        await gateway.invoke_chat([{"role": "user", "content": "hi"}], ChatOptions(model="gpt-4o", temperature=0.2))
    assert boundary.requests[1].model == "gpt-4o"


@pytest.mark.asyncio
async def test_quota_gate_blocks_before_calling_backend(no_sleep) -> None:
    ledger = MemoryUsageLedger()
    await ledger.set_daily_limit("u1", 1)
    boundary = ScriptedBoundary({"content": "first"})
    gateway, _ = _gateway(boundary, no_sleep, RateLimiter(ledger))

    options = ChatOptions(user_id="u1")
    assert await gateway.invoke_chat([{"role": "user", "content": "hi"}], options) == "first"
    assert await ledger.get_count("u1", utc_date()) == 1

    with pytest.raises(RateLimitError) as excinfo:
        await gateway.invoke_chat([{"role": "user", "content": "again"}], options)
    assert excinfo.value.remaining == 0
    assert len(boundary.requests) == 1


@pytest.mark.asyncio
async def test_backend_quota_rejection_is_not_retried(no_sleep) -> None:
    envelope = ErrorEnvelope(
        kind=ErrorKind.RATE_LIMIT,
        code="ACCOUNT_LIMIT_REACHED",
        message="lifetime allowance used",
        limit=20,
        remaining=0,
    )
    boundary = ScriptedBoundary(envelope)
    gateway, _ = _gateway(boundary, no_sleep)

    with pytest.raises(RateLimitError) as excinfo:
        await gateway.invoke_chat([{"role": "user", "content": "hi"}])
    assert excinfo.value.is_account_limit
    assert excinfo.value.limit == 20
    assert str(excinfo.value) != "lifetime allowance used"
    assert excinfo.value.detail == "lifetime allowance used"
    assert len(boundary.requests) == 1


@pytest.mark.asyncio
async def test_chat_requires_messages(no_sleep) -> None:
    gateway, _ = _gateway(ScriptedBoundary(), no_sleep)
    with pytest.raises(ValidationError):
        await gateway.invoke_chat([])


@pytest.mark.asyncio
async def test_transcription_requires_audio_or_path(no_sleep) -> None:
    gateway, _ = _gateway(ScriptedBoundary(), no_sleep)
    with pytest.raises(ValidationError):
        await gateway.invoke_transcription(None, user_id="u1")


def test_transport_attempt_requires_exactly_one_outcome() -> None:
    request = GenerationRequest.stored_audio("u1/a.webm")
    with pytest.raises(ValueError):
        TransportAttempt(request=request)
