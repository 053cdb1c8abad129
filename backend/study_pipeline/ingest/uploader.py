"""Chunked, resumable uploads to the blob store."""

from __future__ import annotations

import asyncio
import time
from functools import partial
from typing import Callable

from study_pipeline.core.config import Settings
from study_pipeline.core.errors import (
    IDENTITY_REQUIRED,
    PipelineError,
    StorageError,
    TransportError,
    UploadCancelledError,
    ValidationError,
)
from study_pipeline.core.logging import get_logger, log_context
from study_pipeline.core.metrics import UPLOAD_DURATION, UPLOADED_BYTES, UPLOADS
from study_pipeline.core.retry import RetryPolicy, Sleep, with_retry
from study_pipeline.ingest.chunker import count_chunks, iter_pending, loaded_bytes, plan_chunks, slice_chunk
from study_pipeline.ingest.types import ChunkRecord, MediaFile, ProgressCallback, ProgressSample, UploadOptions
from study_pipeline.storage.blob import BlobStore, guess_extension
from study_pipeline.storage.task_state import TaskStateStore, UploadTaskState
from study_pipeline.utils.ids import random_suffix, upload_file_id
from study_pipeline.utils.time import now_ms

logger = get_logger(__name__)

DEFAULT_CHUNK_SIZE = 5 * 1024 * 1024
DEFAULT_CHUNKING_THRESHOLD = 10 * 1024 * 1024
PROGRESS_CAP = 99.0


def build_storage_path(user_id: str, file_name: str) -> str:
    return f"{user_id}/{now_ms()}_{random_suffix(6)}.{guess_extension(file_name)}"


class ChunkedUploadManager:
    """Move a file into the blob store, chunking and resuming large transfers.

    Files up to ``chunking_threshold`` bytes are written in one put. Larger
    files are split into ``chunk_size`` ranges written to
    ``<storage_path>.chunk.<index>``; progress is persisted after every chunk
    so that a later call with the same ``file_id`` skips finished chunks. Once
    every chunk is stored they are read back, concatenated into
    ``storage_path`` and deleted.
    """

    def __init__(
        self,
        store: BlobStore,
        state_store: TaskStateStore,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        chunking_threshold: int = DEFAULT_CHUNKING_THRESHOLD,
        retry_policy: RetryPolicy | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be > 0")
        self.store = store
        self.state_store = state_store
        self.chunk_size = chunk_size
        self.chunking_threshold = chunking_threshold
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        store: BlobStore,
        state_store: TaskStateStore,
        **kwargs,
    ) -> "ChunkedUploadManager":
        return cls(
            store,
            state_store,
            chunk_size=settings.chunk_size_bytes,
            chunking_threshold=settings.chunking_threshold_bytes,
            retry_policy=RetryPolicy.from_settings(settings),
            **kwargs,
        )

    async def upload(self, file: MediaFile, options: UploadOptions) -> str:
        """Store ``file`` and return its storage path."""
        if not options.user_id:
            raise ValidationError("A user id is required to upload files.", code=IDENTITY_REQUIRED)
        chunk_size = options.chunk_size or self.chunk_size
        if chunk_size <= 0:
            raise ValidationError("Chunk size must be positive.")

        mode = "single" if file.size <= self.chunking_threshold else "chunked"
        file_id = None
        if mode == "chunked":
            file_id = options.file_id or upload_file_id(options.user_id)
        started = self._clock()
        try:
            if mode == "single":
                path = await self._upload_single(file, options, started)
            else:
                path = await self._upload_chunked(file, file_id, options, chunk_size, started)
        except PipelineError as exc:
            outcome = "cancelled" if isinstance(exc, UploadCancelledError) else "failed"
            UPLOADS.labels(mode=mode, outcome=outcome).inc()
            if file_id is not None and isinstance(exc, StorageError):
                # Callers resume by passing this id back in UploadOptions.
                exc.file_id = file_id
            raise
        UPLOADS.labels(mode=mode, outcome="completed").inc()
        UPLOAD_DURATION.labels(mode=mode).observe(self._clock() - started)
        return path

    def status(self, file_id: str) -> UploadTaskState | None:
        """Persisted progress of an unfinished chunked upload."""
        return self.state_store.load(file_id)

    async def discard(self, file_id: str) -> bool:
        """Forget an unfinished upload and remove the chunks it stored."""
        state = self.state_store.load(file_id)
        if state is None:
            return False
        chunks = plan_chunks(state.total_size, state.chunk_size, state.storage_path)
        stored = [chunk.remote_path for chunk in chunks if chunk.index in set(state.uploaded_chunks)]
        await self._remove_chunks(stored, file_id)
        self.state_store.clear(file_id)
        logger.info("Discarded upload %s", file_id, extra=log_context(file_id=file_id))
        return True

    # Internal helpers -------------------------------------------------

    async def _upload_single(self, file: MediaFile, options: UploadOptions, started: float) -> str:
        path = options.storage_path or build_storage_path(options.user_id, file.name)
        try:
            await with_retry(
                partial(self.store.put, path, file.data, overwrite=True, content_type=file.mime_type),
                self.retry_policy,
                name="upload_put",
                sleep=self._sleep,
            )
        except (TransportError, StorageError) as exc:
            raise StorageError(detail=f"Upload of {file.name} failed: {exc.detail}") from exc
        UPLOADED_BYTES.inc(file.size)
        elapsed = max(self._clock() - started, 0.0)
        self._emit(
            options.on_progress,
            ProgressSample(
                loaded=file.size,
                total=file.size,
                elapsed=elapsed,
                speed=file.size / elapsed if elapsed > 0 else 0.0,
                eta=0.0,
                percentage=100.0,
            ),
        )
        logger.info("Uploaded %s (%s bytes) to %s", file.name, file.size, path, extra=log_context(storage_path=path))
        return path

    async def _upload_chunked(
        self,
        file: MediaFile,
        file_id: str,
        options: UploadOptions,
        chunk_size: int,
        started: float,
    ) -> str:
        state = self._load_or_create(file_id, file, options, chunk_size)
        chunks = plan_chunks(state.total_size, state.chunk_size, state.storage_path)
        on_progress = options.on_progress
        token = options.cancel_token
        session_bytes = 0

        for chunk in iter_pending(chunks, state.uploaded_chunks):
            if token is not None and token.cancelled:
                self._raise_cancelled(state)
            await self._put_chunk(state, chunk, slice_chunk(file.data, chunk))
            if token is not None and token.cancelled:
                self._raise_cancelled(state)
            state.mark_uploaded(chunk.index)
            self.state_store.save(file_id, state)
            session_bytes += chunk.size
            UPLOADED_BYTES.inc(chunk.size)
            self._emit(on_progress, self._sample(chunks, state, started, session_bytes))

        await self._combine(state, chunks)
        self.state_store.clear(file_id)
        self._emit(
            on_progress,
            ProgressSample(
                loaded=state.total_size,
                total=state.total_size,
                elapsed=max(self._clock() - started, 0.0),
                speed=0.0,
                eta=0.0,
                percentage=100.0,
            ),
        )
        logger.info(
            "Uploaded %s in %s chunks to %s",
            file.name,
            state.total_chunks,
            state.storage_path,
            extra=log_context(file_id=file_id, storage_path=state.storage_path),
        )
        return state.storage_path

    def _load_or_create(
        self,
        file_id: str,
        file: MediaFile,
        options: UploadOptions,
        chunk_size: int,
    ) -> UploadTaskState:
        state = self.state_store.load(file_id)
        if state is not None and (state.total_size != file.size or state.chunk_size != chunk_size):
            logger.warning(
                "Stored state for %s does not match the file (%s/%s bytes, chunk %s/%s); starting over",
                file_id,
                state.total_size,
                file.size,
                state.chunk_size,
                chunk_size,
            )
            state = None
        if state is not None:
            logger.info(
                "Resuming upload %s with %s/%s chunks stored",
                file_id,
                len(state.uploaded_chunks),
                state.total_chunks,
                extra=log_context(file_id=file_id),
            )
            return state
        state = UploadTaskState(
            file_id=file_id,
            file_name=file.name,
            total_size=file.size,
            chunk_size=chunk_size,
            total_chunks=count_chunks(file.size, chunk_size),
            storage_path=options.storage_path or build_storage_path(options.user_id, file.name),
        )
        self.state_store.save(file_id, state)
        return state

    async def _put_chunk(self, state: UploadTaskState, chunk: ChunkRecord, data: bytes) -> None:
        try:
            await with_retry(
                partial(self.store.put, chunk.remote_path, data, overwrite=True),
                self.retry_policy,
                name="chunk_put",
                sleep=self._sleep,
            )
        except (TransportError, StorageError) as exc:
            logger.error(
                "Chunk %s of %s failed after %s attempts",
                chunk.index,
                state.file_id,
                self.retry_policy.attempts,
                extra=log_context(file_id=state.file_id, chunk=chunk.index),
            )
            raise StorageError(
                detail=f"Chunk {chunk.index} of {state.file_id} failed: {exc.detail}",
                status=exc.status,
            ) from exc

    async def _combine(self, state: UploadTaskState, chunks: list[ChunkRecord]) -> None:
        parts: list[bytes] = []
        for chunk in chunks:
            try:
                parts.append(
                    await with_retry(
                        partial(self.store.get, chunk.remote_path),
                        self.retry_policy,
                        name="chunk_get",
                        sleep=self._sleep,
                    )
                )
            except PipelineError as exc:
                if exc.code == "NOT_FOUND":
                    # The object is gone, so the next attempt has to upload it again.
                    state.uploaded_chunks = [i for i in state.uploaded_chunks if i != chunk.index]
                    self.state_store.save(state.file_id, state)
                raise StorageError(
                    detail=f"Failed to read chunk {chunk.index} of {state.file_id}: {exc.detail}",
                ) from exc

        combined = b"".join(parts)
        if len(combined) != state.total_size:
            raise StorageError(
                detail=f"Combined size {len(combined)} of {state.file_id} differs from {state.total_size}",
                retryable=False,
            )
        try:
            await with_retry(
                partial(self.store.put, state.storage_path, combined, overwrite=True),
                self.retry_policy,
                name="combine_put",
                sleep=self._sleep,
            )
        except (TransportError, StorageError) as exc:
            raise StorageError(detail=f"Failed to write {state.storage_path}: {exc.detail}") from exc
        await self._remove_chunks([chunk.remote_path for chunk in chunks], state.file_id)

    async def _remove_chunks(self, paths: list[str], file_id: str) -> None:
        if not paths:
            return
        try:
            await self.store.remove(paths)
        except PipelineError as exc:
            logger.warning(
                "Failed to remove %s chunk objects of %s: %s",
                len(paths),
                file_id,
                exc.detail,
                extra=log_context(file_id=file_id),
            )

    def _sample(
        self,
        chunks: list[ChunkRecord],
        state: UploadTaskState,
        started: float,
        session_bytes: int,
    ) -> ProgressSample:
        loaded = loaded_bytes(chunks, state.uploaded_chunks)
        total = state.total_size
        elapsed = max(self._clock() - started, 0.0)
        speed = session_bytes / elapsed if elapsed > 0 else 0.0
        eta = (total - loaded) / speed if speed > 0 else None
        percentage = min(loaded / total * 100 if total else 0.0, PROGRESS_CAP)
        return ProgressSample(loaded=loaded, total=total, elapsed=elapsed, speed=speed, eta=eta, percentage=percentage)

    def _raise_cancelled(self, state: UploadTaskState) -> None:
        logger.info(
            "Upload %s cancelled with %s/%s chunks stored",
            state.file_id,
            len(state.uploaded_chunks),
            state.total_chunks,
            extra=log_context(file_id=state.file_id),
        )
        raise UploadCancelledError(detail=f"Upload {state.file_id} cancelled", file_id=state.file_id)

    @staticmethod
    def _emit(callback: ProgressCallback | None, sample: ProgressSample) -> None:
        if callback is None:
            return
        try:
            callback(sample)
        except Exception:  # noqa: BLE001
            logger.exception("Progress callback raised")


__all__ = ["ChunkedUploadManager", "build_storage_path", "DEFAULT_CHUNK_SIZE", "DEFAULT_CHUNKING_THRESHOLD"]
