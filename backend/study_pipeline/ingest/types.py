"""Common ingestion data structures."""

from __future__ import annotations

import mimetypes
from dataclasses import dataclass
from pathlib import Path
from typing import Callable


@dataclass(slots=True)
class MediaFile:
    """A captured file held in memory."""

    name: str
    data: bytes
    mime_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: Path, mime_type: str | None = None) -> "MediaFile":
        guessed, _ = mimetypes.guess_type(path.name)
        return cls(name=path.name, data=path.read_bytes(), mime_type=mime_type or guessed or "application/octet-stream")

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def is_image(self) -> bool:
        if self.mime_type.startswith("image/"):
            return True
        guessed, _ = mimetypes.guess_type(self.name)
        return bool(guessed and guessed.startswith("image/"))


@dataclass(slots=True, frozen=True)
class ChunkRecord:
    """One byte range of an upload and the object it is written to."""

    index: int
    start: int
    end: int
    remote_path: str

    @property
    def size(self) -> int:
        return self.end - self.start


@dataclass(slots=True, frozen=True)
class ProgressSample:
    """Point-in-time transfer metrics."""

    loaded: int
    total: int
    elapsed: float
    speed: float
    eta: float | None
    percentage: float

    def to_dict(self) -> dict[str, float | int | None]:
        return {
            "loaded": self.loaded,
            "total": self.total,
            "elapsed": self.elapsed,
            "speed": self.speed,
            "eta": self.eta,
            "percentage": self.percentage,
        }


ProgressCallback = Callable[[ProgressSample], None]


class CancelToken:
    """Cooperative cancellation flag shared between a caller and an upload."""

    __slots__ = ("_cancelled",)

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


@dataclass(slots=True)
class UploadOptions:
    user_id: str
    on_progress: ProgressCallback | None = None
    chunk_size: int | None = None
    file_id: str | None = None
    storage_path: str | None = None
    cancel_token: CancelToken | None = None


@dataclass(slots=True)
class IngestResult:
    """Outcome of ingesting a single file."""

    storage_path: str
    url: str
    file_name: str
    mime_type: str
    size: int
    original_size: int

    def to_dict(self) -> dict[str, object]:
        return {
            "storage_path": self.storage_path,
            "url": self.url,
            "file_name": self.file_name,
            "mime_type": self.mime_type,
            "size": self.size,
            "original_size": self.original_size,
        }


__all__ = [
    "MediaFile",
    "ChunkRecord",
    "ProgressSample",
    "ProgressCallback",
    "CancelToken",
    "UploadOptions",
    "IngestResult",
]
