"""Exception handlers translating pipeline errors into HTTP responses."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from study_pipeline.core.errors import TIMEOUT, ErrorKind, PipelineError, RateLimitError
from study_pipeline.core.logging import get_logger, log_context

logger = get_logger(__name__)

_STATUS_BY_KIND: dict[ErrorKind, int] = {
    ErrorKind.TRANSPORT: 502,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.VALIDATION: 400,
    ErrorKind.EMPTY_RESULT: 422,
    ErrorKind.STORAGE: 503,
}


def status_for(exc: PipelineError) -> int:
    if exc.kind is ErrorKind.TRANSPORT and exc.code == TIMEOUT:
        return 504
    return _STATUS_BY_KIND[exc.kind]


def add_error_handlers(app: FastAPI) -> None:
    """Register the handler that renders ``PipelineError`` as ``{kind, code, message, retryable}``."""

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        status = status_for(exc)
        logger.warning(
            "%s %s failed with %s/%s: %s",
            request.method,
            request.url.path,
            exc.kind.value,
            exc.code,
            exc.detail,
            extra=log_context(kind=exc.kind.value, code=exc.code, status=status),
        )
        headers: dict[str, str] = {}
        if isinstance(exc, RateLimitError) and exc.reset_at is not None:
            headers["X-RateLimit-Reset"] = exc.reset_at.isoformat()
        return JSONResponse(status_code=status, content=exc.to_dict(), headers=headers)


__all__ = ["add_error_handlers", "status_for"]
