"""Shared FastAPI dependencies."""

from __future__ import annotations

from functools import lru_cache

from fastapi import HTTPException

from study_pipeline.core.config import Settings, get_settings
from study_pipeline.db.sqlite import SQLiteDatabase
from study_pipeline.gateway import AIInvocationGateway, GenerationBoundary, HttpGenerationBoundary
from study_pipeline.ingest.pipeline import IngestPipeline
from study_pipeline.ingest.uploader import ChunkedUploadManager
from study_pipeline.quota.ledger import SQLiteUsageLedger
from study_pipeline.quota.limiter import RateLimiter
from study_pipeline.storage.blob import BlobStore, LocalBlobStore, MemoryBlobStore
from study_pipeline.storage.supabase import SupabaseBlobStore
from study_pipeline.storage.task_state import FileTaskStateStore, TaskStateStore

_DB: SQLiteDatabase | None = None
_BLOB_STORE: BlobStore | None = None
_TASK_STATE: TaskStateStore | None = None
_UPLOADER: ChunkedUploadManager | None = None
_PIPELINE: IngestPipeline | None = None
_LIMITER: RateLimiter | None = None
_BOUNDARY: GenerationBoundary | None = None
_GATEWAY: AIInvocationGateway | None = None


@lru_cache(maxsize=1)
def get_app_settings() -> Settings:
    return get_settings()


def get_database() -> SQLiteDatabase:
    global _DB
    if _DB is None:
        settings = get_app_settings()
        db = SQLiteDatabase(settings.db_path)
        db.ensure_schema()
        _DB = db
    return _DB


def get_blob_store() -> BlobStore:
    global _BLOB_STORE
    if _BLOB_STORE is None:
        settings = get_app_settings()
        if settings.blob_backend == "memory":
            _BLOB_STORE = MemoryBlobStore()
        elif settings.blob_backend == "supabase":
            if not settings.storage_url or not settings.storage_key:
                raise ValueError("storage_url and storage_key are required for the supabase backend")
            _BLOB_STORE = SupabaseBlobStore(
                settings.storage_url,
                settings.storage_bucket,
                settings.storage_key,
                timeout=settings.request_timeout_seconds,
            )
        else:
            _BLOB_STORE = LocalBlobStore(settings.blob_root)
    return _BLOB_STORE


def get_task_state_store() -> TaskStateStore:
    global _TASK_STATE
    if _TASK_STATE is None:
        _TASK_STATE = FileTaskStateStore(get_app_settings().task_state_dir)
    return _TASK_STATE


def get_uploader() -> ChunkedUploadManager:
    global _UPLOADER
    if _UPLOADER is None:
        _UPLOADER = ChunkedUploadManager.from_settings(
            get_app_settings(),
            get_blob_store(),
            get_task_state_store(),
        )
    return _UPLOADER


def get_ingest_pipeline() -> IngestPipeline:
    global _PIPELINE
    if _PIPELINE is None:
        _PIPELINE = IngestPipeline(uploader=get_uploader(), settings=get_app_settings())
    return _PIPELINE


def get_rate_limiter() -> RateLimiter:
    global _LIMITER
    if _LIMITER is None:
        _LIMITER = RateLimiter.from_settings(get_app_settings(), SQLiteUsageLedger(get_database()))
    return _LIMITER


def get_generation_boundary() -> GenerationBoundary:
    global _BOUNDARY
    if _BOUNDARY is None:
        settings = get_app_settings()
        if not settings.generation_url:
            raise HTTPException(status_code=503, detail="Generation service is not configured")
        _BOUNDARY = HttpGenerationBoundary.from_settings(settings)
    return _BOUNDARY


def get_gateway() -> AIInvocationGateway:
    global _GATEWAY
    if _GATEWAY is None:
        _GATEWAY = AIInvocationGateway.from_settings(
            get_app_settings(),
            get_generation_boundary(),
            get_uploader(),
            get_rate_limiter(),
        )
    return _GATEWAY


async def close_clients() -> None:
    """Release pooled HTTP connections held by process-wide services."""
    for service in (_BLOB_STORE, _BOUNDARY):
        aclose = getattr(service, "aclose", None)
        if aclose is not None:
            await aclose()


__all__ = [
    "get_app_settings",
    "get_database",
    "get_blob_store",
    "get_task_state_store",
    "get_uploader",
    "get_ingest_pipeline",
    "get_rate_limiter",
    "get_generation_boundary",
    "get_gateway",
    "close_clients",
]
