"""The single call site of the remote generation service."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

import httpx

from study_pipeline.core.config import Settings
from study_pipeline.core.errors import (
    BAD_REQUEST,
    ESCALATION_CODES,
    MALFORMED_RESPONSE,
    NETWORK,
    NON_JSON_RESPONSE,
    PAYLOAD_TOO_LARGE,
    QUOTA_CODES,
    TIMEOUT,
    UPSTREAM_ERROR,
    ErrorEnvelope,
    ErrorKind,
    classify_message,
)
from study_pipeline.core.logging import get_logger, log_context
from study_pipeline.gateway.types import GenerationRequest, TransportAttempt

logger = get_logger(__name__)


class GenerationBoundary(Protocol):
    async def send(self, request: GenerationRequest) -> TransportAttempt:
        """Send ``request``; failures come back as an envelope, never raised."""
        ...


def _as_int(value: Any) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    return None


def _as_datetime(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


def _error_text(body: dict[str, Any], fallback: str) -> str:
    for key in ("message", "error"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
        if isinstance(value, dict) and isinstance(value.get("message"), str):
            return value["message"]
    return fallback


def interpret_response(response: httpx.Response) -> tuple[dict[str, Any] | None, ErrorEnvelope | None]:
    """Turn an HTTP response into a payload or an error envelope."""
    status = response.status_code
    if status == 413:
        return None, ErrorEnvelope(
            kind=ErrorKind.TRANSPORT,
            code=PAYLOAD_TOO_LARGE,
            message=response.text[:500] or "Payload too large",
            retryable=True,
            status=status,
        )

    try:
        body = response.json()
    except ValueError:
        if status == 504:
            return None, ErrorEnvelope(
                kind=ErrorKind.TRANSPORT, code=TIMEOUT, message="Gateway timeout", retryable=True, status=status
            )
        content_type = response.headers.get("content-type", "")
        return None, ErrorEnvelope(
            kind=ErrorKind.TRANSPORT,
            code=NON_JSON_RESPONSE,
            message=f"{status} {content_type}: {response.text[:200]}",
            retryable=True,
            status=status,
        )
    if not isinstance(body, dict):
        return None, ErrorEnvelope(
            kind=ErrorKind.TRANSPORT,
            code=MALFORMED_RESPONSE,
            message=f"Expected a JSON object, got {type(body).__name__}",
            retryable=True,
            status=status,
        )

    code = body.get("code") if isinstance(body.get("code"), str) else None
    if code in QUOTA_CODES:
        return None, ErrorEnvelope(
            kind=ErrorKind.RATE_LIMIT,
            code=code,
            message=_error_text(body, code),
            status=status,
            limit=_as_int(body.get("limit")),
            remaining=_as_int(body.get("remaining")),
            reset_at=_as_datetime(body.get("resetAt")),
        )

    if status >= 500:
        return None, ErrorEnvelope(
            kind=ErrorKind.TRANSPORT,
            code=TIMEOUT if status == 504 else UPSTREAM_ERROR,
            message=_error_text(body, response.reason_phrase),
            retryable=True,
            status=status,
        )
    if status == 429:
        # Throttled by the provider rather than by the per-user quota.
        return None, ErrorEnvelope(
            kind=ErrorKind.TRANSPORT,
            code=UPSTREAM_ERROR,
            message=_error_text(body, "Too many requests"),
            retryable=True,
            status=status,
        )
    if status >= 400:
        message = _error_text(body, response.reason_phrase)
        if code is None:
            guessed = classify_message(message, status)
            if guessed.code in ESCALATION_CODES or guessed.is_quota:
                return None, guessed
        return None, ErrorEnvelope(
            kind=ErrorKind.VALIDATION,
            code=code or BAD_REQUEST,
            message=message,
            status=status,
        )

    if "error" in body and "content" not in body and "text" not in body:
        return None, classify_message(_error_text(body, "Unknown error"), status)
    return body, None


class HttpGenerationBoundary:
    """POSTs generation requests to the edge function over httpx."""

    def __init__(
        self,
        url: str,
        api_key: str | None = None,
        *,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.url = url
        self._api_key = api_key
        self._timeout = timeout
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings, client: httpx.AsyncClient | None = None) -> "HttpGenerationBoundary":
        if not settings.generation_url:
            raise ValueError("generation_url is not configured")
        return cls(
            settings.generation_url,
            settings.generation_key,
            timeout=settings.request_timeout_seconds,
            client=client,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def send(self, request: GenerationRequest) -> TransportAttempt:
        client = await self._get_client()
        headers = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        try:
            response = await client.post(self.url, json=request.to_body(), headers=headers)
        except httpx.TimeoutException as exc:
            envelope = ErrorEnvelope(
                kind=ErrorKind.TRANSPORT, code=TIMEOUT, message=f"Request timed out: {exc}", retryable=True
            )
            return self._failed(request, envelope)
        except httpx.TransportError as exc:
            envelope = ErrorEnvelope(
                kind=ErrorKind.TRANSPORT, code=NETWORK, message=f"Request failed: {exc}", retryable=True
            )
            return self._failed(request, envelope)

        payload, envelope = interpret_response(response)
        if envelope is not None:
            return self._failed(request, envelope)
        return TransportAttempt(request=request, payload=payload)

    @staticmethod
    def _failed(request: GenerationRequest, envelope: ErrorEnvelope) -> TransportAttempt:
        logger.info(
            "%s request via %s failed with %s: %s",
            request.kind.value,
            request.transport.value,
            envelope.code,
            envelope.message,
            extra=log_context(kind=request.kind.value, transport=request.transport.value, code=envelope.code),
        )
        return TransportAttempt(request=request, error=envelope)


__all__ = ["GenerationBoundary", "HttpGenerationBoundary", "interpret_response"]
