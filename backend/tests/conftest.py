"""Test fixtures for the study pipeline."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))


def _reset_dependencies() -> None:
    from study_pipeline.api import dependencies as deps
    from study_pipeline.core.config import get_settings

    get_settings.cache_clear()
    deps.get_app_settings.cache_clear()
    if deps._DB is not None:
        deps._DB.close()
    deps._DB = None
    deps._BLOB_STORE = None
    deps._TASK_STATE = None
    deps._UPLOADER = None
    deps._PIPELINE = None
    deps._LIMITER = None
    deps._BOUNDARY = None
    deps._GATEWAY = None


@pytest.fixture(autouse=True)
def reset_state(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Reset global singletons and environment between tests."""
    monkeypatch.setenv("STDP_DB_PATH", str(tmp_path / "usage.db"))
    monkeypatch.setenv("STDP_TASK_STATE_DIR", str(tmp_path / "uploads"))
    monkeypatch.setenv("STDP_BLOB_BACKEND", "memory")
    monkeypatch.delenv("STDP_CONFIG", raising=False)
    monkeypatch.delenv("STDP_GENERATION_URL", raising=False)
    monkeypatch.delenv("STDP_LIFETIME_LIMIT", raising=False)

    _reset_dependencies()
    yield
    _reset_dependencies()


@pytest.fixture
def no_sleep():
    """Sleep replacement that records requested delays instead of waiting."""
    delays: list[float] = []

    async def _sleep(delay: float) -> None:
        delays.append(delay)

    _sleep.delays = delays
    return _sleep
