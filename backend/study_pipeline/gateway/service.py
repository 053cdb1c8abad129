"""AI invocation gateway: transport selection, quota gate, retry and escalation."""

from __future__ import annotations

import asyncio
from typing import Any, Iterable, Mapping

from study_pipeline.core.config import MIB, Settings
from study_pipeline.core.errors import (
    IDENTITY_REQUIRED,
    PAYLOAD_TOO_LARGE,
    EmptyResultError,
    PipelineError,
    TransportError,
    ValidationError,
    error_from_envelope,
)
from study_pipeline.core.logging import get_logger, log_context
from study_pipeline.core.metrics import ESCALATIONS, INVOCATIONS
from study_pipeline.core.retry import RetryPolicy, Sleep, with_retry
from study_pipeline.gateway.boundary import GenerationBoundary
from study_pipeline.gateway.types import (
    DEFAULT_AUDIO_MIME,
    DEFAULT_MODEL,
    DEFAULT_TEMPERATURE,
    ChatMessage,
    ChatOptions,
    GenerationRequest,
    TransportAttempt,
)
from study_pipeline.ingest.types import MediaFile, UploadOptions
from study_pipeline.ingest.uploader import ChunkedUploadManager
from study_pipeline.quota.limiter import RateLimiter

logger = get_logger(__name__)

DEFAULT_INLINE_THRESHOLD = 2 * MIB


class AIInvocationGateway:
    """Invoke chat and transcription on the generation service.

    Transcriptions go inline while the audio is small, otherwise the audio is
    uploaded first and referenced by storage path. An inline request rejected
    before reaching the backend is escalated once to the storage-reference
    transport.
    """

    def __init__(
        self,
        boundary: GenerationBoundary,
        uploader: ChunkedUploadManager,
        limiter: RateLimiter | None = None,
        *,
        retry_policy: RetryPolicy | None = None,
        inline_threshold: int = DEFAULT_INLINE_THRESHOLD,
        default_model: str = DEFAULT_MODEL,
        default_temperature: float = DEFAULT_TEMPERATURE,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.boundary = boundary
        self.uploader = uploader
        self.limiter = limiter
        self.retry_policy = retry_policy or RetryPolicy()
        self.inline_threshold = inline_threshold
        self.default_model = default_model
        self.default_temperature = default_temperature
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        boundary: GenerationBoundary,
        uploader: ChunkedUploadManager,
        limiter: RateLimiter | None = None,
        **kwargs,
    ) -> "AIInvocationGateway":
        return cls(
            boundary,
            uploader,
            limiter,
            retry_policy=RetryPolicy.from_settings(settings),
            inline_threshold=settings.inline_threshold_bytes,
            default_model=settings.default_model,
            default_temperature=settings.default_temperature,
            **kwargs,
        )

    async def invoke_chat(
        self,
        messages: Iterable[ChatMessage | Mapping[str, Any]],
        options: ChatOptions | None = None,
    ) -> str:
        options = options or ChatOptions()
        normalized = [
            message if isinstance(message, ChatMessage) else ChatMessage.model_validate(message)
            for message in messages
        ]
        if not normalized:
            raise ValidationError("At least one message is required.")
        request = GenerationRequest.chat(
            normalized,
            model=options.model or self.default_model,
            temperature=self.default_temperature if options.temperature is None else options.temperature,
        )

        await self._gate(options.user_id)
        attempt = await self._send(request)
        if attempt.error is not None:
            raise self._failure(attempt)

        content = attempt.payload.get("content")
        if not isinstance(content, str):
            self._count(request, "empty_result")
            raise EmptyResultError(detail="Chat response carried no content field")
        self._count(request, "success")
        await self._record(options.user_id)
        return content

    async def invoke_transcription(
        self,
        audio: MediaFile | bytes | None = None,
        storage_path_hint: str | None = None,
        user_id: str | None = None,
    ) -> str:
        file = self._as_media(audio)
        if file is None and not storage_path_hint:
            raise ValidationError("Audio or a storage path is required.")

        await self._gate(user_id)
        if storage_path_hint:
            request = GenerationRequest.stored_audio(storage_path_hint, file.mime_type if file else None)
        elif file.size > self.inline_threshold:
            path = await self._upload(file, user_id)
            request = GenerationRequest.stored_audio(path, file.mime_type)
        else:
            request = GenerationRequest.inline_audio(file.data, file.mime_type)

        attempt = await self._send(request)
        if attempt.should_escalate:
            attempt = await self._escalate(attempt, file, user_id)
        if attempt.error is not None:
            raise self._failure(attempt)

        text = attempt.payload.get("text")
        if not isinstance(text, str) or not text.strip():
            self._count(attempt.request, "empty_result")
            raise EmptyResultError(
                "No speech was recognized in the recording.",
                detail="Transcription response carried no text",
            )
        self._count(attempt.request, "success")
        await self._record(user_id)
        return text

    # Internal helpers -------------------------------------------------

    async def _escalate(self, attempt: TransportAttempt, file: MediaFile, user_id: str | None) -> TransportAttempt:
        ESCALATIONS.inc()
        self._count(attempt.request, "escalated")
        if not user_id:
            raise ValidationError(
                "The recording is too large to send directly. Sign in to upload it first.",
                code=PAYLOAD_TOO_LARGE,
                detail=f"Cannot fall back to storage without a user id: {attempt.error.message}",
            )
        logger.info(
            "Inline transcription rejected with %s; retrying via storage",
            attempt.error.code,
            extra=log_context(user_id=user_id, code=attempt.error.code),
        )
        path = await self._upload(file, user_id)
        return await self._send(GenerationRequest.stored_audio(path, file.mime_type))

    async def _send(self, request: GenerationRequest) -> TransportAttempt:
        async def attempt_once() -> TransportAttempt:
            attempt = await self.boundary.send(request)
            error = attempt.error
            if error is not None and error.retryable and not error.is_quota and not attempt.should_escalate:
                raise error_from_envelope(error)
            return attempt

        try:
            return await with_retry(
                attempt_once,
                self.retry_policy,
                name=f"generate_{request.kind.value}",
                sleep=self._sleep,
            )
        except TransportError as exc:
            return TransportAttempt(request=request, error=exc.envelope)

    async def _upload(self, file: MediaFile, user_id: str | None) -> str:
        if not user_id:
            raise ValidationError("Sign in to transcribe large recordings.", code=IDENTITY_REQUIRED)
        return await self.uploader.upload(file, UploadOptions(user_id=user_id))

    async def _gate(self, user_id: str | None) -> None:
        if self.limiter is not None and user_id:
            await self.limiter.check_quota(user_id)

    async def _record(self, user_id: str | None) -> None:
        if self.limiter is not None and user_id:
            await self.limiter.record_usage(user_id)

    def _failure(self, attempt: TransportAttempt) -> PipelineError:
        envelope = attempt.error
        self._count(attempt.request, envelope.kind.value)
        logger.warning(
            "%s via %s failed: %s %s",
            attempt.request.kind.value,
            attempt.request.transport.value,
            envelope.code,
            envelope.message,
            extra=log_context(code=envelope.code, status=envelope.status),
        )
        return error_from_envelope(envelope)

    @staticmethod
    def _count(request: GenerationRequest, outcome: str) -> None:
        INVOCATIONS.labels(kind=request.kind.value, transport=request.transport.value, outcome=outcome).inc()

    @staticmethod
    def _as_media(audio: MediaFile | bytes | None) -> MediaFile | None:
        if audio is None or isinstance(audio, MediaFile):
            return audio
        return MediaFile(name="recording.webm", data=bytes(audio), mime_type=DEFAULT_AUDIO_MIME)


__all__ = ["AIInvocationGateway", "DEFAULT_INLINE_THRESHOLD"]
