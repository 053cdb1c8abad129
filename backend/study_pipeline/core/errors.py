"""Error kinds, the normalized error envelope, and the exception hierarchy."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict


class ErrorKind(str, Enum):
    TRANSPORT = "transport"
    RATE_LIMIT = "rate_limit"
    VALIDATION = "validation"
    EMPTY_RESULT = "empty_result"
    STORAGE = "storage"


DAILY_LIMIT_REACHED = "DAILY_LIMIT_REACHED"
ACCOUNT_LIMIT_REACHED = "ACCOUNT_LIMIT_REACHED"
MALFORMED_RESPONSE = "MALFORMED_RESPONSE"
NON_JSON_RESPONSE = "NON_JSON_RESPONSE"
PAYLOAD_TOO_LARGE = "PAYLOAD_TOO_LARGE"
TIMEOUT = "TIMEOUT"
NETWORK = "NETWORK"
UPSTREAM_ERROR = "UPSTREAM_ERROR"
BAD_REQUEST = "BAD_REQUEST"
IDENTITY_REQUIRED = "IDENTITY_REQUIRED"
EMPTY_RESULT = "EMPTY_RESULT"
STORAGE_FAILURE = "STORAGE_FAILURE"
CANCELLED = "CANCELLED"

QUOTA_CODES = frozenset({DAILY_LIMIT_REACHED, ACCOUNT_LIMIT_REACHED})

# Signatures of a request rejected before it reached the generation backend.
ESCALATION_CODES = frozenset({MALFORMED_RESPONSE, NON_JSON_RESPONSE, PAYLOAD_TOO_LARGE})


class ErrorEnvelope(BaseModel):
    """Structured failure produced once, at the call site that observed it.

    ``message`` holds the raw upstream text and is meant for logs only.
    """

    model_config = ConfigDict(frozen=True)

    kind: ErrorKind
    code: str
    message: str = ""
    retryable: bool = False
    status: int | None = None
    limit: int | None = None
    remaining: int | None = None
    reset_at: datetime | None = None

    @property
    def should_escalate(self) -> bool:
        return self.code in ESCALATION_CODES

    @property
    def is_quota(self) -> bool:
        return self.kind is ErrorKind.RATE_LIMIT or self.code in QUOTA_CODES


class PipelineError(Exception):
    """Base class for every failure the pipeline surfaces to callers.

    ``str(exc)`` is safe to show; ``detail`` keeps the original text for logging.
    """

    kind: ClassVar[ErrorKind]
    default_code: ClassVar[str]
    default_message: ClassVar[str]
    default_retryable: ClassVar[bool] = False

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        detail: str | None = None,
        retryable: bool | None = None,
        status: int | None = None,
    ) -> None:
        self.message = message or self.default_message
        self.code = code or self.default_code
        self.detail = detail if detail is not None else self.message
        self.retryable = self.default_retryable if retryable is None else retryable
        self.status = status
        super().__init__(self.message)

    @property
    def envelope(self) -> ErrorEnvelope:
        return ErrorEnvelope(
            kind=self.kind,
            code=self.code,
            message=self.detail,
            retryable=self.retryable,
            status=self.status,
        )

    @classmethod
    def from_envelope(cls, envelope: ErrorEnvelope) -> "PipelineError":
        return cls(
            code=envelope.code,
            detail=envelope.message,
            retryable=envelope.retryable,
            status=envelope.status,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }


class TransportError(PipelineError):
    kind = ErrorKind.TRANSPORT
    default_code = UPSTREAM_ERROR
    default_message = "The service could not be reached. Please try again."
    default_retryable = True


class ValidationError(PipelineError):
    kind = ErrorKind.VALIDATION
    default_code = BAD_REQUEST
    default_message = "The request was invalid."


class EmptyResultError(PipelineError):
    kind = ErrorKind.EMPTY_RESULT
    default_code = EMPTY_RESULT
    default_message = "The service returned no usable content."


class StorageError(PipelineError):
    """Storage failure; ``file_id`` names the resumable upload it interrupted, if any."""

    kind = ErrorKind.STORAGE
    default_code = STORAGE_FAILURE
    default_message = "The file could not be stored. Please try again."
    default_retryable = True

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        detail: str | None = None,
        retryable: bool | None = None,
        status: int | None = None,
        file_id: str | None = None,
    ) -> None:
        super().__init__(message, code=code, detail=detail, retryable=retryable, status=status)
        self.file_id = file_id

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.file_id is not None:
            payload["file_id"] = self.file_id
        return payload


class UploadCancelledError(StorageError):
    default_code = CANCELLED
    default_message = "The upload was cancelled."


class RateLimitError(PipelineError):
    kind = ErrorKind.RATE_LIMIT
    default_code = DAILY_LIMIT_REACHED
    default_message = "Generation limit reached."

    def __init__(
        self,
        message: str | None = None,
        *,
        code: str | None = None,
        detail: str | None = None,
        limit: int | None = None,
        remaining: int | None = 0,
        reset_at: datetime | None = None,
        status: int | None = None,
        retryable: bool | None = None,
    ) -> None:
        super().__init__(message, code=code, detail=detail, retryable=False, status=status)
        self.limit = limit
        self.remaining = remaining
        self.reset_at = reset_at

    @property
    def is_account_limit(self) -> bool:
        return self.code == ACCOUNT_LIMIT_REACHED

    @property
    def envelope(self) -> ErrorEnvelope:
        return ErrorEnvelope(
            kind=self.kind,
            code=self.code,
            message=self.detail,
            retryable=False,
            status=self.status,
            limit=self.limit,
            remaining=self.remaining,
            reset_at=self.reset_at,
        )

    @classmethod
    def from_envelope(cls, envelope: ErrorEnvelope) -> "RateLimitError":
        return cls(
            code=envelope.code if envelope.code in QUOTA_CODES else DAILY_LIMIT_REACHED,
            detail=envelope.message,
            limit=envelope.limit,
            remaining=envelope.remaining if envelope.remaining is not None else 0,
            reset_at=envelope.reset_at,
            status=envelope.status,
        )

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "limit": self.limit,
                "remaining": self.remaining,
                "reset_at": self.reset_at.isoformat() if self.reset_at else None,
            }
        )
        return payload


_EXCEPTIONS: dict[ErrorKind, type[PipelineError]] = {
    ErrorKind.TRANSPORT: TransportError,
    ErrorKind.RATE_LIMIT: RateLimitError,
    ErrorKind.VALIDATION: ValidationError,
    ErrorKind.EMPTY_RESULT: EmptyResultError,
    ErrorKind.STORAGE: StorageError,
}


def error_from_envelope(envelope: ErrorEnvelope) -> PipelineError:
    """Build the exception matching an envelope's kind."""
    if envelope.is_quota:
        return RateLimitError.from_envelope(envelope)
    return _EXCEPTIONS[envelope.kind].from_envelope(envelope)


def classify_message(message: str, status: int | None = None) -> ErrorEnvelope:
    """Map an unstructured upstream failure onto an envelope.

    This is a known approximation based on substrings. It is used only when the
    upstream produced neither a machine-readable code nor a usable status.
    """
    text = message.lower()
    if "daily_limit" in text:
        return ErrorEnvelope(kind=ErrorKind.RATE_LIMIT, code=DAILY_LIMIT_REACHED, message=message, status=status)
    if "account_limit" in text:
        return ErrorEnvelope(kind=ErrorKind.RATE_LIMIT, code=ACCOUNT_LIMIT_REACHED, message=message, status=status)
    if "text/html" in text or "unexpected token" in text or ("json" in text and "parse" in text):
        return ErrorEnvelope(
            kind=ErrorKind.TRANSPORT, code=NON_JSON_RESPONSE, message=message, retryable=True, status=status
        )
    if "413" in text or "too large" in text:
        return ErrorEnvelope(
            kind=ErrorKind.TRANSPORT, code=PAYLOAD_TOO_LARGE, message=message, retryable=True, status=status
        )
    if "timeout" in text or "timed out" in text or "504" in text:
        return ErrorEnvelope(kind=ErrorKind.TRANSPORT, code=TIMEOUT, message=message, retryable=True, status=status)
    if "network" in text or "connection" in text or "failed to fetch" in text:
        return ErrorEnvelope(kind=ErrorKind.TRANSPORT, code=NETWORK, message=message, retryable=True, status=status)
    return ErrorEnvelope(kind=ErrorKind.TRANSPORT, code=UPSTREAM_ERROR, message=message, status=status)


__all__ = [
    "ErrorKind",
    "ErrorEnvelope",
    "PipelineError",
    "TransportError",
    "ValidationError",
    "EmptyResultError",
    "StorageError",
    "UploadCancelledError",
    "RateLimitError",
    "error_from_envelope",
    "classify_message",
    "QUOTA_CODES",
    "ESCALATION_CODES",
    "DAILY_LIMIT_REACHED",
    "ACCOUNT_LIMIT_REACHED",
    "MALFORMED_RESPONSE",
    "NON_JSON_RESPONSE",
    "PAYLOAD_TOO_LARGE",
    "TIMEOUT",
    "NETWORK",
    "UPSTREAM_ERROR",
    "BAD_REQUEST",
    "IDENTITY_REQUIRED",
    "EMPTY_RESULT",
    "STORAGE_FAILURE",
    "CANCELLED",
]
