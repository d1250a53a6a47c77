import hashlib
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import BinaryIO

from video_ingest.errors import MissingChunk, SizeMismatch
from video_ingest.session_store import AssemblySnapshot
from video_ingest.storage import ChunkStorage


@dataclass(frozen=True)
class AssembledArtifact:
    session_id: str
    file_name: str
    mime_type: str
    size_bytes: int
    sha256: str
    stream: BinaryIO


class Assembler:
    """Concatenates a session's chunks in index order into one spooled file.

    Small artifacts stay in memory; anything above ``spool_max_bytes`` is
    rolled over to a temporary file on disk.
    """

    def __init__(self, storage: ChunkStorage, spool_max_bytes: int) -> None:
        self.storage = storage
        self.spool_max_bytes = spool_max_bytes

    @contextmanager
    def assemble(self, snapshot: AssemblySnapshot) -> Iterator[AssembledArtifact]:
        record = snapshot.record
        missing = snapshot.missing_indexes
        if missing:
            raise MissingChunk(f"no payload recorded for chunk {missing[0]}", missing_chunk_indexes=missing)

        digest = hashlib.sha256()
        total = 0
        with tempfile.SpooledTemporaryFile(max_size=self.spool_max_bytes) as buffer:
            for index in range(record.total_chunks):
                key = snapshot.chunks[index].storage_key
                try:
                    data = self.storage.read_chunk(key)
                except FileNotFoundError as exc:
                    raise MissingChunk(f"payload for chunk {index} is gone", missing_chunk_indexes=[index]) from exc
                buffer.write(data)
                digest.update(data)
                total += len(data)

            if total != record.declared_size:
                raise SizeMismatch(
                    f"assembled {total} bytes but the session declared {record.declared_size}",
                    assembled_size=total,
                    declared_size=record.declared_size,
                )
            buffer.seek(0)
            yield AssembledArtifact(
                session_id=record.session_id,
                file_name=record.file_name,
                mime_type=record.mime_type,
                size_bytes=total,
                sha256=digest.hexdigest(),
                stream=buffer,
            )
