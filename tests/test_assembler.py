import hashlib
from datetime import datetime, timezone
from pathlib import Path

import pytest

from video_ingest.assembler import Assembler
from video_ingest.errors import MissingChunk, SizeMismatch
from video_ingest.session_store import AssemblySnapshot, ChunkRef, SessionRecord
from video_ingest.storage import LocalChunkStorage


def _record(declared_size: int, total_chunks: int) -> SessionRecord:
    return SessionRecord(
        session_id="s1",
        file_name="clip.mp4",
        mime_type="video/mp4",
        declared_size=declared_size,
        chunk_size=4,
        total_chunks=total_chunks,
        status="ASSEMBLING",
        created_at=datetime.now(timezone.utc),
    )


def _store_chunks(storage: LocalChunkStorage, payloads: dict[int, bytes]) -> dict[int, ChunkRef]:
    refs = {}
    for index, payload in payloads.items():
        key = storage.chunk_key("s1", index, "w")
        storage.write_chunk(key, payload)
        refs[index] = ChunkRef(index=index, storage_key=key, size_bytes=len(payload), sha256="")
    return refs


def test_chunks_written_out_of_order_assemble_in_index_order(tmp_path: Path) -> None:
    storage = LocalChunkStorage(str(tmp_path))
    refs = _store_chunks(storage, {2: b"ij", 0: b"abcd", 1: b"efgh"})
    assembler = Assembler(storage, spool_max_bytes=4)

    with assembler.assemble(AssemblySnapshot(_record(10, 3), refs)) as artifact:
        assert artifact.stream.read() == b"abcdefghij"
        assert artifact.size_bytes == 10
        assert artifact.sha256 == hashlib.sha256(b"abcdefghij").hexdigest()


def test_missing_index_raises_missing_chunk(tmp_path: Path) -> None:
    storage = LocalChunkStorage(str(tmp_path))
    refs = _store_chunks(storage, {0: b"abcd", 2: b"ij"})

    with pytest.raises(MissingChunk) as exc_info:
        with Assembler(storage, spool_max_bytes=1024).assemble(AssemblySnapshot(_record(10, 3), refs)):
            pass
    assert exc_info.value.context["missing_chunk_indexes"] == [1]


def test_vanished_payload_raises_missing_chunk(tmp_path: Path) -> None:
    storage = LocalChunkStorage(str(tmp_path))
    refs = _store_chunks(storage, {0: b"abcd", 1: b"ef"})
    storage.delete_key(refs[1].storage_key)

    with pytest.raises(MissingChunk):
        with Assembler(storage, spool_max_bytes=1024).assemble(AssemblySnapshot(_record(6, 2), refs)):
            pass


def test_total_length_must_match_declared_size(tmp_path: Path) -> None:
    storage = LocalChunkStorage(str(tmp_path))
    refs = _store_chunks(storage, {0: b"abcd", 1: b"e"})

    with pytest.raises(SizeMismatch) as exc_info:
        with Assembler(storage, spool_max_bytes=1024).assemble(AssemblySnapshot(_record(6, 2), refs)):
            pass
    assert exc_info.value.context == {"assembled_size": 5, "declared_size": 6}
