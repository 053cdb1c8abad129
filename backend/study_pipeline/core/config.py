"""Application configuration handling."""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal, Mapping

import yaml
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "STDP_"
DEFAULT_CONFIG_PATH = Path("~/.config/study-pipeline/config.yaml")

MIB = 1024 * 1024

_YAML_KEY_MAP: Mapping[tuple[str, ...], str] = {
    ("storage", "db_path"): "db_path",
    ("storage", "task_state_dir"): "task_state_dir",
    ("storage", "backend"): "blob_backend",
    ("storage", "root"): "blob_root",
    ("storage", "url"): "storage_url",
    ("storage", "bucket"): "storage_bucket",
    ("storage", "key"): "storage_key",
    ("storage", "signed_url_ttl"): "signed_url_ttl_seconds",
    ("upload", "chunk_size"): "chunk_size_bytes",
    ("upload", "chunking_threshold"): "chunking_threshold_bytes",
    ("retry", "attempts"): "retry_attempts",
    ("retry", "initial_delay"): "retry_initial_delay",
    ("retry", "max_delay"): "retry_max_delay",
    ("generation", "url"): "generation_url",
    ("generation", "key"): "generation_key",
    ("generation", "timeout"): "request_timeout_seconds",
    ("generation", "inline_threshold"): "inline_threshold_bytes",
    ("generation", "model"): "default_model",
    ("generation", "temperature"): "default_temperature",
    ("quota", "daily_limit"): "default_daily_limit",
    ("quota", "lifetime_limit"): "lifetime_limit",
    ("images", "max_edge"): "image_max_edge",
    ("images", "quality"): "image_quality",
}


class Settings(BaseModel):
    """Runtime configuration loaded from YAML file and environment variables."""

    db_path: Path = Field(default=Path.home() / ".study-pipeline" / "usage.db")
    task_state_dir: Path = Field(default=Path.home() / ".study-pipeline" / "uploads")

    blob_backend: Literal["memory", "local", "supabase"] = "local"
    blob_root: Path = Field(default=Path.home() / ".study-pipeline" / "blobs")
    storage_url: str | None = None
    storage_bucket: str = "documents"
    storage_key: str | None = None
    signed_url_ttl_seconds: int = 3600

    chunk_size_bytes: int = Field(default=5 * MIB, gt=0)
    chunking_threshold_bytes: int = Field(default=10 * MIB, ge=0)

    retry_attempts: int = Field(default=3, ge=1)
    retry_initial_delay: float = Field(default=1.0, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)

    generation_url: str | None = None
    generation_key: str | None = None
    request_timeout_seconds: float = 120.0
    inline_threshold_bytes: int = Field(default=2 * MIB, ge=0)
    default_model: str = "gpt-4o-mini"
    default_temperature: float = 0.7

    default_daily_limit: int = Field(default=150, ge=0)
    lifetime_limit: int | None = None

    image_max_edge: int = Field(default=1920, gt=0)
    image_quality: int = Field(default=80, ge=1, le=100)

    model_config = {
        "validate_assignment": True,
        "extra": "ignore",
    }

    @field_validator("db_path", "task_state_dir", "blob_root", mode="before")
    @classmethod
    def _expand_path(cls, value: Any) -> Path:
        if isinstance(value, Path):
            return value.expanduser()
        if isinstance(value, str):
            return Path(value).expanduser()
        raise TypeError("path settings must be a path or string")

    @field_validator("lifetime_limit", mode="before")
    @classmethod
    def _blank_lifetime_limit(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @classmethod
    def from_yaml(cls, path: Path | None = None) -> "Settings":
        """Load YAML config and overlay env vars; fall back to defaults."""
        config_path = cls._resolve_config_path(path)
        data: dict[str, Any] = {}
        if config_path and config_path.exists():
            with config_path.open("r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
            data.update(_flatten_yaml(raw))
        data.update(_load_env_overrides())
        return cls(**data)

    @staticmethod
    def _resolve_config_path(path: Path | None) -> Path | None:
        if path is not None:
            return path.expanduser()
        env_path = os.environ.get(f"{ENV_PREFIX}CONFIG")
        if env_path:
            return Path(env_path).expanduser()
        resolved_default = DEFAULT_CONFIG_PATH.expanduser()
        return resolved_default if resolved_default.exists() else None


def _flatten_yaml(raw: Mapping[str, Any], prefix: tuple[str, ...] = ()) -> dict[str, Any]:
    """Flatten nested YAML configuration to Settings field names."""
    flat: dict[str, Any] = {}
    for key, value in raw.items():
        next_prefix = prefix + (key,)
        if isinstance(value, Mapping):
            flat.update(_flatten_yaml(value, prefix=next_prefix))
        else:
            mapped_key = _YAML_KEY_MAP.get(next_prefix)
            if mapped_key:
                flat[mapped_key] = value
            elif key in Settings.model_fields:
                flat[key] = value
    return flat


def _load_env_overrides() -> dict[str, Any]:
    """Map environment variables with STDP_ prefix into Settings fields."""
    overrides: dict[str, Any] = {}
    for key, value in os.environ.items():
        if not key.startswith(ENV_PREFIX):
            continue
        field_name = key[len(ENV_PREFIX) :].lower()
        if field_name in Settings.model_fields:
            overrides[field_name] = value
    return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings accessor for dependency injection."""
    return Settings.from_yaml()


__all__ = ["MIB", "Settings", "get_settings"]
