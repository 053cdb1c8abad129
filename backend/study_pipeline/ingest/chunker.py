"""Byte-range chunk planning."""

from __future__ import annotations

import math
from typing import Iterator, Sequence

from study_pipeline.ingest.types import ChunkRecord

CHUNK_MARKER = ".chunk."


def count_chunks(total_size: int, chunk_size: int) -> int:
    """Number of chunks needed for ``total_size`` bytes."""
    if chunk_size <= 0:
        raise ValueError("chunk_size must be > 0")
    if total_size < 0:
        raise ValueError("total_size must be >= 0")
    return math.ceil(total_size / chunk_size)


def chunk_path(storage_path: str, index: int) -> str:
    return f"{storage_path}{CHUNK_MARKER}{index}"


def plan_chunks(total_size: int, chunk_size: int, storage_path: str) -> list[ChunkRecord]:
    """Split ``[0, total_size)`` into consecutive ranges of at most ``chunk_size``."""
    chunks: list[ChunkRecord] = []
    for index in range(count_chunks(total_size, chunk_size)):
        start = index * chunk_size
        end = min(start + chunk_size, total_size)
        chunks.append(ChunkRecord(index=index, start=start, end=end, remote_path=chunk_path(storage_path, index)))
    return chunks


def iter_pending(chunks: Sequence[ChunkRecord], uploaded: Sequence[int]) -> Iterator[ChunkRecord]:
    """Yield chunks not yet recorded as uploaded, in ascending index order."""
    done = set(uploaded)
    for chunk in sorted(chunks, key=lambda c: c.index):
        if chunk.index not in done:
            yield chunk


def slice_chunk(data: bytes, chunk: ChunkRecord) -> bytes:
    return data[chunk.start : chunk.end]


def loaded_bytes(chunks: Sequence[ChunkRecord], uploaded: Sequence[int]) -> int:
    """Exact byte count covered by the uploaded indices."""
    done = set(uploaded)
    return sum(chunk.size for chunk in chunks if chunk.index in done)


__all__ = [
    "CHUNK_MARKER",
    "count_chunks",
    "chunk_path",
    "plan_chunks",
    "iter_pending",
    "slice_chunk",
    "loaded_bytes",
]
