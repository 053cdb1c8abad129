"""Pre-flight quota checks on top of the usage ledger."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from study_pipeline.core.config import Settings
from study_pipeline.core.errors import (
    ACCOUNT_LIMIT_REACHED,
    DAILY_LIMIT_REACHED,
    RateLimitError,
    StorageError,
    TransportError,
)
from study_pipeline.core.logging import get_logger, log_context
from study_pipeline.core.metrics import QUOTA_FAIL_OPEN, QUOTA_REJECTIONS
from study_pipeline.quota.ledger import UsageLedger
from study_pipeline.utils.time import next_utc_midnight, utc_date, utc_now

logger = get_logger(__name__)

DEFAULT_DAILY_LIMIT = 150

_LEDGER_ERRORS = (StorageError, TransportError)


@dataclass(frozen=True, slots=True)
class QuotaStatus:
    limit: int
    used: int
    remaining: int
    reset_at: datetime
    lifetime_used: int
    lifetime_limit: int | None

    def to_dict(self) -> dict[str, object]:
        return {
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining,
            "reset_at": self.reset_at.isoformat(),
            "lifetime_used": self.lifetime_used,
            "lifetime_limit": self.lifetime_limit,
        }


class RateLimiter:
    """Client-side quota gate.

    Ledger failures never block a call: the generation service performs the
    authoritative check itself. Only a confirmed breach raises
    ``RateLimitError``.
    """

    def __init__(
        self,
        ledger: UsageLedger,
        default_limit: int = DEFAULT_DAILY_LIMIT,
        lifetime_limit: int | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.ledger = ledger
        self.default_limit = default_limit
        self.lifetime_limit = lifetime_limit
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings, ledger: UsageLedger) -> "RateLimiter":
        return cls(ledger, default_limit=settings.default_daily_limit, lifetime_limit=settings.lifetime_limit)

    async def check_quota(self, user_id: str) -> None:
        now = self._clock()
        try:
            limit = await self._limit_for(user_id)
            count = await self.ledger.get_count(user_id, utc_date(now))
        except _LEDGER_ERRORS as exc:
            self._fail_open(user_id, exc)
            return

        if count >= limit:
            QUOTA_REJECTIONS.labels(code=DAILY_LIMIT_REACHED).inc()
            logger.info(
                "Daily limit reached for %s (%s/%s)",
                user_id,
                count,
                limit,
                extra=log_context(user_id=user_id, code=DAILY_LIMIT_REACHED),
            )
            raise RateLimitError(
                "Daily limit reached. Please try again tomorrow.",
                code=DAILY_LIMIT_REACHED,
                detail=f"{user_id} used {count} of {limit} generations today",
                limit=limit,
                remaining=0,
                reset_at=next_utc_midnight(now),
            )

        if self.lifetime_limit is None:
            return
        try:
            lifetime = await self.ledger.get_lifetime_count(user_id)
        except _LEDGER_ERRORS as exc:
            self._fail_open(user_id, exc)
            return
        if lifetime >= self.lifetime_limit:
            QUOTA_REJECTIONS.labels(code=ACCOUNT_LIMIT_REACHED).inc()
            raise RateLimitError(
                "You've reached your one-time AI generation limit.",
                code=ACCOUNT_LIMIT_REACHED,
                detail=f"{user_id} used {lifetime} of {self.lifetime_limit} lifetime generations",
                limit=self.lifetime_limit,
                remaining=0,
                reset_at=None,
            )

    async def record_usage(self, user_id: str) -> None:
        """Count one successful generation. Failures are logged, not raised."""
        try:
            await self.ledger.increment(user_id, utc_date(self._clock()))
        except _LEDGER_ERRORS as exc:
            logger.warning(
                "Failed to record usage for %s: %s",
                user_id,
                exc.detail,
                extra=log_context(user_id=user_id),
            )

    async def usage(self, user_id: str) -> QuotaStatus:
        now = self._clock()
        limit = await self._limit_for(user_id)
        used = await self.ledger.get_count(user_id, utc_date(now))
        lifetime_used = await self.ledger.get_lifetime_count(user_id)
        return QuotaStatus(
            limit=limit,
            used=used,
            remaining=max(limit - used, 0),
            reset_at=next_utc_midnight(now),
            lifetime_used=lifetime_used,
            lifetime_limit=self.lifetime_limit,
        )

    async def _limit_for(self, user_id: str) -> int:
        override = await self.ledger.get_daily_limit(user_id)
        return self.default_limit if override is None else override

    def _fail_open(self, user_id: str, exc: StorageError | TransportError) -> None:
        QUOTA_FAIL_OPEN.inc()
        logger.warning(
            "Usage ledger unavailable for %s, allowing request: %s",
            user_id,
            exc.detail,
            extra=log_context(user_id=user_id),
        )


__all__ = ["RateLimiter", "QuotaStatus", "DEFAULT_DAILY_LIMIT"]
