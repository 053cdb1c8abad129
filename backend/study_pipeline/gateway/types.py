"""Request and attempt models for the generation service."""

from __future__ import annotations

import base64
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from study_pipeline.core.errors import ErrorEnvelope

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_AUDIO_MIME = "audio/webm"


class Transport(str, Enum):
    INLINE = "inline"
    STORAGE_REF = "storage_ref"


class GenerationKind(str, Enum):
    CHAT = "chat"
    TRANSCRIPTION = "transcription"


class ChatMessage(BaseModel):
    role: Literal["system", "user", "assistant"]
    content: str


class ChatOptions(BaseModel):
    """Per-call chat settings; unset fields fall back to the configured defaults."""

    model: str | None = None
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    user_id: str | None = None


class GenerationRequest(BaseModel):
    """One request to the generation service.

    The transport is fixed when the request is built; escalating to another
    transport means building a new request.
    """

    model_config = ConfigDict(frozen=True)

    kind: GenerationKind
    transport: Transport
    model: str | None = None
    temperature: float | None = None
    messages: tuple[ChatMessage, ...] = ()
    audio_inline: bytes | None = Field(default=None, repr=False)
    mime_type: str | None = None
    storage_path: str | None = None

    @model_validator(mode="after")
    def _check_payload(self) -> "GenerationRequest":
        if self.kind is GenerationKind.CHAT:
            if not self.messages:
                raise ValueError("chat requests need at least one message")
            if self.transport is not Transport.INLINE:
                raise ValueError("chat requests are always inline")
        elif self.transport is Transport.INLINE and self.audio_inline is None:
            raise ValueError("inline transcription requests need audio")
        elif self.transport is Transport.STORAGE_REF and not self.storage_path:
            raise ValueError("storage-reference requests need a storage path")
        return self

    @classmethod
    def chat(cls, messages: list[ChatMessage], model: str, temperature: float) -> "GenerationRequest":
        return cls(
            kind=GenerationKind.CHAT,
            transport=Transport.INLINE,
            model=model,
            temperature=temperature,
            messages=tuple(messages),
        )

    @classmethod
    def inline_audio(cls, data: bytes, mime_type: str) -> "GenerationRequest":
        return cls(
            kind=GenerationKind.TRANSCRIPTION,
            transport=Transport.INLINE,
            audio_inline=data,
            mime_type=mime_type,
        )

    @classmethod
    def stored_audio(cls, storage_path: str, mime_type: str | None = None) -> "GenerationRequest":
        return cls(
            kind=GenerationKind.TRANSCRIPTION,
            transport=Transport.STORAGE_REF,
            storage_path=storage_path,
            mime_type=mime_type,
        )

    def to_body(self) -> dict[str, Any]:
        """Wire body accepted by the generation endpoint."""
        body: dict[str, Any] = {"type": self.kind.value}
        if self.kind is GenerationKind.CHAT:
            body["messages"] = [message.model_dump() for message in self.messages]
            if self.model is not None:
                body["model"] = self.model
            if self.temperature is not None:
                body["temperature"] = self.temperature
            return body
        if self.transport is Transport.INLINE and self.audio_inline is not None:
            body["audioBase64"] = base64.b64encode(self.audio_inline).decode("ascii")
        else:
            body["storagePath"] = self.storage_path
        if self.mime_type:
            body["mimeType"] = self.mime_type
        return body


@dataclass(frozen=True, slots=True)
class TransportAttempt:
    """Result of sending one request: a decoded payload or an error envelope."""

    request: GenerationRequest
    payload: dict[str, Any] | None = None
    error: ErrorEnvelope | None = None

    def __post_init__(self) -> None:
        if (self.payload is None) == (self.error is None):
            raise ValueError("exactly one of payload and error must be set")

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def should_escalate(self) -> bool:
        """True when an inline transcription was rejected before reaching the backend.

        Chat has no storage transport, so its rejections are plain transport
        failures.
        """
        return (
            self.error is not None
            and self.error.should_escalate
            and self.request.kind is GenerationKind.TRANSCRIPTION
            and self.request.transport is Transport.INLINE
        )


__all__ = [
    "Transport",
    "GenerationKind",
    "ChatMessage",
    "ChatOptions",
    "GenerationRequest",
    "TransportAttempt",
    "DEFAULT_MODEL",
    "DEFAULT_TEMPERATURE",
    "DEFAULT_AUDIO_MIME",
]
