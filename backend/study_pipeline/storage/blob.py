"""Blob store gateway contract and local implementations."""

from __future__ import annotations

import os
from pathlib import Path, PurePosixPath
from typing import Protocol, Sequence, runtime_checkable

import aiofiles
import aiofiles.os

from study_pipeline.core.errors import PipelineError, StorageError, ValidationError
from study_pipeline.core.logging import get_logger

logger = get_logger(__name__)


@runtime_checkable
class BlobStore(Protocol):
    """Remote object store as seen by the pipeline.

    Implementations raise ``TransportError`` for failures worth retrying
    (network, timeouts, 5xx) and ``StorageError`` for definitive ones.
    """

    async def put(
        self,
        path: str,
        data: bytes,
        *,
        overwrite: bool = False,
        content_type: str | None = None,
    ) -> None: ...

    async def get(self, path: str) -> bytes: ...

    async def remove(self, paths: Sequence[str]) -> None: ...

    async def sign(self, path: str, ttl_seconds: int) -> str: ...

    def public_url(self, path: str) -> str: ...


def normalize_key(path: str) -> str:
    """Reject absolute and parent-relative object keys."""
    key = PurePosixPath(path.strip())
    if not key.parts or key.is_absolute() or ".." in key.parts:
        raise ValidationError(f"Invalid storage path: {path!r}")
    return key.as_posix()


class MemoryBlobStore:
    """Process-local store, used for tests and the ``memory`` backend."""

    def __init__(self) -> None:
        self.objects: dict[str, bytes] = {}

    async def put(
        self,
        path: str,
        data: bytes,
        *,
        overwrite: bool = False,
        content_type: str | None = None,
    ) -> None:
        key = normalize_key(path)
        if not overwrite and key in self.objects:
            raise StorageError(detail=f"Object already exists: {key}", code="ALREADY_EXISTS", retryable=False)
        self.objects[key] = bytes(data)

    async def get(self, path: str) -> bytes:
        key = normalize_key(path)
        try:
            return self.objects[key]
        except KeyError:
            raise StorageError(detail=f"Object not found: {key}", code="NOT_FOUND", retryable=False) from None

    async def remove(self, paths: Sequence[str]) -> None:
        for path in paths:
            self.objects.pop(normalize_key(path), None)

    async def sign(self, path: str, ttl_seconds: int) -> str:
        key = normalize_key(path)
        if key not in self.objects:
            raise StorageError(detail=f"Object not found: {key}", code="NOT_FOUND", retryable=False)
        return f"memory://{key}?expires_in={ttl_seconds}"

    def public_url(self, path: str) -> str:
        return f"memory://{normalize_key(path)}"


class LocalBlobStore:
    """Filesystem-backed store rooted at a directory."""

    def __init__(self, root: Path) -> None:
        self.root = root.expanduser()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        return self.root.joinpath(*PurePosixPath(normalize_key(path)).parts)

    async def put(
        self,
        path: str,
        data: bytes,
        *,
        overwrite: bool = False,
        content_type: str | None = None,
    ) -> None:
        target = self._resolve(path)
        if not overwrite and target.exists():
            raise StorageError(detail=f"Object already exists: {path}", code="ALREADY_EXISTS", retryable=False)
        target.parent.mkdir(parents=True, exist_ok=True)
        temp_path = target.with_name(f".{target.name}.tmp")
        try:
            async with aiofiles.open(temp_path, "wb") as fh:
                await fh.write(data)
            await aiofiles.os.replace(temp_path, target)
        except OSError as exc:
            raise StorageError(detail=f"Failed to write {path}: {exc}") from exc

    async def get(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            async with aiofiles.open(target, "rb") as fh:
                return await fh.read()
        except FileNotFoundError:
            raise StorageError(detail=f"Object not found: {path}", code="NOT_FOUND", retryable=False) from None
        except OSError as exc:
            raise StorageError(detail=f"Failed to read {path}: {exc}") from exc

    async def remove(self, paths: Sequence[str]) -> None:
        for path in paths:
            try:
                await aiofiles.os.remove(self._resolve(path))
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StorageError(detail=f"Failed to remove {path}: {exc}") from exc

    async def sign(self, path: str, ttl_seconds: int) -> str:
        target = self._resolve(path)
        if not target.exists():
            raise StorageError(detail=f"Object not found: {path}", code="NOT_FOUND", retryable=False)
        return target.as_uri()

    def public_url(self, path: str) -> str:
        return self._resolve(path).as_uri()


async def resolve_url(store: BlobStore, path: str, ttl_seconds: int) -> str:
    """Signed URL for ``path``, falling back to the public URL when signing fails."""
    try:
        return await store.sign(path, ttl_seconds)
    except PipelineError as exc:
        logger.warning("Failed to sign %s, using public URL (%s)", path, exc.code)
        return store.public_url(path)


def guess_extension(file_name: str) -> str:
    _, ext = os.path.splitext(file_name)
    return ext.lstrip(".").lower() or "bin"


__all__ = [
    "BlobStore",
    "MemoryBlobStore",
    "LocalBlobStore",
    "normalize_key",
    "resolve_url",
    "guess_extension",
]
