"""Ingest pipeline orchestration."""

from __future__ import annotations

import asyncio

from study_pipeline.core.config import Settings
from study_pipeline.core.logging import get_logger, log_context
from study_pipeline.ingest.preprocess import MediaPreprocessor
from study_pipeline.ingest.types import CancelToken, IngestResult, MediaFile, ProgressCallback, UploadOptions
from study_pipeline.ingest.uploader import ChunkedUploadManager
from study_pipeline.storage.blob import resolve_url

logger = get_logger(__name__)


class IngestPipeline:
    """Coordinate preprocessing, upload and URL resolution for captured media."""

    def __init__(
        self,
        uploader: ChunkedUploadManager,
        settings: Settings,
        preprocessor: MediaPreprocessor | None = None,
    ) -> None:
        self.uploader = uploader
        self.settings = settings
        self.preprocessor = preprocessor or MediaPreprocessor.from_settings(settings)

    async def ingest(
        self,
        file: MediaFile,
        user_id: str,
        on_progress: ProgressCallback | None = None,
        file_id: str | None = None,
        cancel_token: CancelToken | None = None,
    ) -> IngestResult:
        original_size = file.size
        prepared = await asyncio.to_thread(self.preprocessor.prepare, file)
        storage_path = await self.uploader.upload(
            prepared,
            UploadOptions(
                user_id=user_id,
                on_progress=on_progress,
                file_id=file_id,
                cancel_token=cancel_token,
            ),
        )
        url = await resolve_url(self.uploader.store, storage_path, self.settings.signed_url_ttl_seconds)
        logger.info(
            "Ingested %s as %s (%s -> %s bytes)",
            file.name,
            storage_path,
            original_size,
            prepared.size,
            extra=log_context(user_id=user_id, storage_path=storage_path),
        )
        return IngestResult(
            storage_path=storage_path,
            url=url,
            file_name=prepared.name,
            mime_type=prepared.mime_type,
            size=prepared.size,
            original_size=original_size,
        )


__all__ = ["IngestPipeline"]
