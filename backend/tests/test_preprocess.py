"""Tests for image preprocessing and the ingest pipeline."""

from __future__ import annotations

import os
from io import BytesIO

import pytest
from PIL import Image

from study_pipeline.core.config import Settings
from study_pipeline.ingest.pipeline import IngestPipeline
from study_pipeline.ingest.preprocess import MediaPreprocessor
from study_pipeline.ingest.types import MediaFile
from study_pipeline.ingest.uploader import ChunkedUploadManager
from study_pipeline.storage.blob import MemoryBlobStore
from study_pipeline.storage.task_state import MemoryTaskStateStore


def _noisy_png(width: int, height: int) -> bytes:
    image = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def test_large_image_is_downscaled_to_webp() -> None:
    original = MediaFile("whiteboard.png", _noisy_png(2400, 1200), "image/png")
    prepared = MediaPreprocessor().prepare(original)

    assert prepared.name == "whiteboard.webp"
    assert prepared.mime_type == "image/webp"
    assert prepared.size < original.size
    with Image.open(BytesIO(prepared.data)) as image:
        assert image.size == (1920, 960)


def test_image_detected_by_extension_when_mime_is_generic() -> None:
    original = MediaFile("photo.png", _noisy_png(64, 64), "application/octet-stream")
    prepared = MediaPreprocessor().prepare(original)
    assert prepared.mime_type == "image/webp"


def test_non_image_passes_through() -> None:
    original = MediaFile("lecture.m4a", b"\x00" * 1024, "audio/mp4")
    assert MediaPreprocessor().prepare(original) is original


def test_undecodable_image_returns_original() -> None:
    original = MediaFile("broken.jpg", b"definitely not a jpeg", "image/jpeg")
    assert MediaPreprocessor().prepare(original) is original


def test_larger_encoding_is_not_substituted() -> None:
    image = Image.new("RGB", (4, 4), "white")
    buffer = BytesIO()
    image.save(buffer, format="GIF")
    original = MediaFile("dot.gif", buffer.getvalue(), "image/gif")

    prepared = MediaPreprocessor(quality=100).prepare(original)
    assert prepared.size <= original.size


@pytest.mark.asyncio
async def test_pipeline_preprocesses_uploads_and_signs() -> None:
    store = MemoryBlobStore()
    pipeline = IngestPipeline(
        uploader=ChunkedUploadManager(store, MemoryTaskStateStore()),
        settings=Settings(blob_backend="memory"),
    )
    original = MediaFile("board.png", _noisy_png(2000, 500), "image/png")

    result = await pipeline.ingest(original, user_id="u1")

    assert result.storage_path.startswith("u1/") and result.storage_path.endswith(".webp")
    assert result.url == f"memory://{result.storage_path}?expires_in=3600"
    assert result.original_size == original.size
    assert result.size == len(store.objects[result.storage_path]) < original.size
