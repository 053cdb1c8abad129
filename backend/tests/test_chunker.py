"""Tests for chunk planning."""

import pytest

from study_pipeline.ingest.chunker import count_chunks, iter_pending, loaded_bytes, plan_chunks, slice_chunk

MIB = 1024 * 1024


def test_plan_covers_file_with_short_last_chunk() -> None:
    chunks = plan_chunks(12 * MIB, 5 * MIB, "u1/a.m4a")
    assert [c.size for c in chunks] == [5 * MIB, 5 * MIB, 2 * MIB]
    assert chunks[0].start == 0 and chunks[-1].end == 12 * MIB
    assert [c.remote_path for c in chunks] == ["u1/a.m4a.chunk.0", "u1/a.m4a.chunk.1", "u1/a.m4a.chunk.2"]


def test_count_chunks_edges() -> None:
    assert count_chunks(0, 5) == 0
    assert count_chunks(10, 5) == 2
    assert count_chunks(11, 5) == 3
    with pytest.raises(ValueError):
        count_chunks(10, 0)


def test_pending_and_loaded_bytes() -> None:
    chunks = plan_chunks(11, 5, "p")
    assert [c.index for c in iter_pending(chunks, [1])] == [0, 2]
    assert loaded_bytes(chunks, [0, 2]) == 6
    assert slice_chunk(b"abcdefghijk", chunks[2]) == b"k"
