"""Shared retry policy with exponential backoff."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from study_pipeline.core.config import Settings
from study_pipeline.core.errors import StorageError, TransportError
from study_pipeline.core.logging import get_logger, log_context
from study_pipeline.core.metrics import RETRIES

logger = get_logger(__name__)

T = TypeVar("T")
Sleep = Callable[[float], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    attempts: int = 3
    initial_delay: float = 1.0
    multiplier: float = 2.0
    max_delay: float = 30.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            attempts=settings.retry_attempts,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
        )

    def delays(self) -> list[float]:
        """Sleep durations between consecutive attempts."""
        delay = self.initial_delay
        out: list[float] = []
        for _ in range(self.attempts - 1):
            out.append(min(delay, self.max_delay))
            delay *= self.multiplier
        return out


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    *,
    name: str = "operation",
    sleep: Sleep = asyncio.sleep,
) -> T:
    """Run ``operation``, retrying transport and storage failures marked retryable.

    Every other exception, including a missing object and application errors
    reported by the remote side, propagates on the first occurrence.
    """
    delays = policy.delays()
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation()
        except (TransportError, StorageError) as exc:
            if not exc.retryable or attempt >= policy.attempts:
                raise
            delay = delays[attempt - 1]
            RETRIES.labels(operation=name).inc()
            logger.info(
                "Retrying %s (attempt %s/%s) in %.2fs: %s",
                name,
                attempt + 1,
                policy.attempts,
                delay,
                exc.code,
                extra=log_context(operation=name, attempt=attempt),
            )
            await sleep(delay)


__all__ = ["RetryPolicy", "with_retry"]
