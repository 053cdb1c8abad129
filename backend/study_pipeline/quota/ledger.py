"""Per-user usage counters and quota overrides."""

from __future__ import annotations

import asyncio
import sqlite3
import threading
from datetime import date
from typing import Any, Callable, Protocol, TypeVar

from study_pipeline.core.errors import StorageError
from study_pipeline.db.sqlite import SQLiteDatabase
from study_pipeline.utils.time import now_ms

T = TypeVar("T")


class UsageLedger(Protocol):
    """Storage for usage counters.

    Implementations raise ``StorageError`` or ``TransportError`` when the
    backing store is unavailable.
    """

    async def get_daily_limit(self, user_id: str) -> int | None: ...

    async def set_daily_limit(self, user_id: str, limit: int) -> None: ...

    async def get_count(self, user_id: str, usage_date: date) -> int: ...

    async def increment(self, user_id: str, usage_date: date) -> int: ...

    async def get_lifetime_count(self, user_id: str) -> int: ...


class SQLiteUsageLedger:
    """Ledger kept in the ``daily_ai_usage``, ``account_limits`` and ``account_ai_usage`` tables.

    Queries run on worker threads so the event loop never blocks on disk. The
    connection is shared, so a lock keeps one statement group in flight at a time.
    """

    def __init__(self, db: SQLiteDatabase) -> None:
        self.db = db
        self._lock = threading.Lock()

    async def get_daily_limit(self, user_id: str) -> int | None:
        row = await self._fetch("SELECT daily_ai_limit FROM account_limits WHERE user_id = ?", [user_id])
        return int(row["daily_ai_limit"]) if row else None

    async def set_daily_limit(self, user_id: str, limit: int) -> None:
        await self._run(self._set_daily_limit, user_id, limit)

    async def get_count(self, user_id: str, usage_date: date) -> int:
        row = await self._fetch(
            "SELECT count FROM daily_ai_usage WHERE user_id = ? AND usage_date = ?",
            [user_id, usage_date.isoformat()],
        )
        return int(row["count"]) if row else 0

    async def increment(self, user_id: str, usage_date: date) -> int:
        return await self._run(self._increment, user_id, usage_date.isoformat())

    async def get_lifetime_count(self, user_id: str) -> int:
        row = await self._fetch("SELECT generation_count FROM account_ai_usage WHERE user_id = ?", [user_id])
        return int(row["generation_count"]) if row else 0

    async def _fetch(self, sql: str, params: list[object]) -> sqlite3.Row | None:
        try:
            return await self._run(self.db.fetchone, sql, params)
        except sqlite3.Error as exc:
            raise StorageError(detail=f"Usage ledger query failed: {exc}") from exc

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        return await asyncio.to_thread(self._locked, fn, *args)

    def _locked(self, fn: Callable[..., T], *args: Any) -> T:
        with self._lock:
            return fn(*args)

    def _set_daily_limit(self, user_id: str, limit: int) -> None:
        try:
            with self.db.transaction() as cur:
                cur.execute(
                    """
                    INSERT INTO account_limits (user_id, daily_ai_limit, updated_at) VALUES (?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                      daily_ai_limit = excluded.daily_ai_limit,
                      updated_at = excluded.updated_at
                    """,
                    [user_id, limit, now_ms()],
                )
        except sqlite3.Error as exc:
            raise StorageError(detail=f"Failed to set limit for {user_id}: {exc}") from exc

    def _increment(self, user_id: str, day: str) -> int:
        now = now_ms()
        try:
            with self.db.transaction() as cur:
                cur.execute(
                    """
                    INSERT INTO daily_ai_usage (user_id, usage_date, count, updated_at) VALUES (?, ?, 1, ?)
                    ON CONFLICT(user_id, usage_date) DO UPDATE SET
                      count = count + 1,
                      updated_at = excluded.updated_at
                    """,
                    [user_id, day, now],
                )
                cur.execute(
                    """
                    INSERT INTO account_ai_usage (user_id, generation_count, first_used_at, updated_at)
                    VALUES (?, 1, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                      generation_count = generation_count + 1,
                      updated_at = excluded.updated_at
                    """,
                    [user_id, now, now],
                )
                row = cur.execute(
                    "SELECT count FROM daily_ai_usage WHERE user_id = ? AND usage_date = ?",
                    [user_id, day],
                ).fetchone()
        except sqlite3.Error as exc:
            raise StorageError(detail=f"Failed to record usage for {user_id}: {exc}") from exc
        return int(row["count"])


class MemoryUsageLedger:
    def __init__(self) -> None:
        self.limits: dict[str, int] = {}
        self.counts: dict[tuple[str, date], int] = {}
        self.lifetime: dict[str, int] = {}

    async def get_daily_limit(self, user_id: str) -> int | None:
        return self.limits.get(user_id)

    async def set_daily_limit(self, user_id: str, limit: int) -> None:
        self.limits[user_id] = limit

    async def get_count(self, user_id: str, usage_date: date) -> int:
        return self.counts.get((user_id, usage_date), 0)

    async def increment(self, user_id: str, usage_date: date) -> int:
        key = (user_id, usage_date)
        self.counts[key] = self.counts.get(key, 0) + 1
        self.lifetime[user_id] = self.lifetime.get(user_id, 0) + 1
        return self.counts[key]

    async def get_lifetime_count(self, user_id: str) -> int:
        return self.lifetime.get(user_id, 0)


__all__ = ["UsageLedger", "SQLiteUsageLedger", "MemoryUsageLedger"]
