"""Tests for the shared retry policy."""

import pytest

from study_pipeline.core.errors import RateLimitError, StorageError, TransportError
from study_pipeline.core.retry import RetryPolicy, with_retry


def test_delays_double_and_cap() -> None:
    assert RetryPolicy().delays() == [1.0, 2.0]
    assert RetryPolicy(attempts=6, initial_delay=10.0, max_delay=30.0).delays() == [10.0, 20.0, 30.0, 30.0, 30.0]


@pytest.mark.asyncio
async def test_transport_errors_are_retried_until_success(no_sleep) -> None:
    calls = 0

    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise TransportError(detail="connection reset")
        return "ok"

    assert await with_retry(flaky, RetryPolicy(), sleep=no_sleep) == "ok"
    assert calls == 3
    assert no_sleep.delays == [1.0, 2.0]


@pytest.mark.asyncio
async def test_gives_up_after_policy_attempts(no_sleep) -> None:
    calls = 0

    async def always_down() -> None:
        nonlocal calls
        calls += 1
        raise TransportError(detail="down")

    with pytest.raises(TransportError):
        await with_retry(always_down, RetryPolicy(attempts=3), sleep=no_sleep)
    assert calls == 3


@pytest.mark.asyncio
async def test_non_transport_and_non_retryable_errors_propagate_immediately(no_sleep) -> None:
    calls = 0

    async def limited() -> None:
        nonlocal calls
        calls += 1
        raise RateLimitError(limit=30)

    with pytest.raises(RateLimitError):
        await with_retry(limited, RetryPolicy(), sleep=no_sleep)

    async def rejected() -> None:
        nonlocal calls
        calls += 1
        raise TransportError(detail="bad gateway", retryable=False)

    with pytest.raises(TransportError):
        await with_retry(rejected, RetryPolicy(), sleep=no_sleep)
    assert calls == 2
    assert no_sleep.delays == []


@pytest.mark.asyncio
async def test_retryable_storage_errors_are_retried(no_sleep) -> None:
    calls = 0

    async def disk_busy() -> bytes:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise StorageError(detail="Failed to write u1/a.bin: [Errno 16] Device or resource busy")
        return b"ok"

    assert await with_retry(disk_busy, RetryPolicy(), sleep=no_sleep) == b"ok"
    assert calls == 2
    assert no_sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_missing_object_is_not_retried(no_sleep) -> None:
    calls = 0

    async def missing() -> bytes:
        nonlocal calls
        calls += 1
        raise StorageError(detail="Object not found: u1/a.bin", code="NOT_FOUND", retryable=False)

    with pytest.raises(StorageError):
        await with_retry(missing, RetryPolicy(), sleep=no_sleep)
    assert calls == 1
    assert no_sleep.delays == []
