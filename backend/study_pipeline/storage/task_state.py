"""Persisted per-file upload progress, used to resume interrupted transfers."""

from __future__ import annotations

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Protocol

import orjson
from pydantic import BaseModel, Field, field_validator

from study_pipeline.core.logging import get_logger
from study_pipeline.utils.time import utc_now

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class UploadTaskState(BaseModel):
    """Durable record of one chunked upload."""

    file_id: str
    file_name: str
    total_size: int = Field(ge=0)
    chunk_size: int = Field(gt=0)
    total_chunks: int = Field(ge=0)
    storage_path: str
    uploaded_chunks: list[int] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("uploaded_chunks")
    @classmethod
    def _unique_sorted(cls, value: list[int]) -> list[int]:
        return sorted(set(value))

    def mark_uploaded(self, index: int) -> None:
        if not 0 <= index < self.total_chunks:
            raise ValueError(f"chunk index {index} outside [0, {self.total_chunks})")
        if index not in self.uploaded_chunks:
            self.uploaded_chunks = sorted([*self.uploaded_chunks, index])
        self.updated_at = utc_now()

    def pending_chunks(self) -> list[int]:
        done = set(self.uploaded_chunks)
        return [index for index in range(self.total_chunks) if index not in done]


class TaskStateStore(Protocol):
    def load(self, file_id: str) -> UploadTaskState | None: ...

    def save(self, file_id: str, state: UploadTaskState) -> None: ...

    def clear(self, file_id: str) -> None: ...


class MemoryTaskStateStore:
    """Keeps serialized copies so callers cannot mutate stored state in place."""

    def __init__(self) -> None:
        self._states: dict[str, bytes] = {}

    def load(self, file_id: str) -> UploadTaskState | None:
        raw = self._states.get(file_id)
        return UploadTaskState.model_validate_json(raw) if raw is not None else None

    def save(self, file_id: str, state: UploadTaskState) -> None:
        self._states[file_id] = state.model_dump_json().encode("utf-8")

    def clear(self, file_id: str) -> None:
        self._states.pop(file_id, None)

    def __contains__(self, file_id: object) -> bool:
        return file_id in self._states


class FileTaskStateStore:
    """One JSON document per upload under a directory; survives restarts."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory.expanduser()
        self.directory.mkdir(parents=True, exist_ok=True)

    def _path_for(self, file_id: str) -> Path:
        return self.directory / f"upload_{_UNSAFE_CHARS.sub('_', file_id)}.json"

    def load(self, file_id: str) -> UploadTaskState | None:
        path = self._path_for(file_id)
        if not path.exists():
            return None
        try:
            data = orjson.loads(path.read_bytes())
            return UploadTaskState.model_validate(data)
        except ValueError as exc:
            logger.warning("Discarding unreadable upload state %s: %s", path, exc)
            return None

    def save(self, file_id: str, state: UploadTaskState) -> None:
        path = self._path_for(file_id)
        temp_path = path.with_suffix(".json.tmp")
        temp_path.write_bytes(orjson.dumps(state.model_dump(mode="json")))
        os.replace(temp_path, path)

    def clear(self, file_id: str) -> None:
        try:
            self._path_for(file_id).unlink()
        except FileNotFoundError:
            pass


__all__ = ["UploadTaskState", "TaskStateStore", "MemoryTaskStateStore", "FileTaskStateStore"]
