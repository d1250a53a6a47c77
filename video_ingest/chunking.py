"""Splitting a source file into fixed-size chunks.

The arithmetic here is shared: the client uses it to cut a file, the server
uses it to decide how long each chunk of a session has to be.
"""

import math
import os
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path

from video_ingest.config import settings


def chunk_count(size: int, chunk_size: int) -> int:
    if size <= 0:
        raise ValueError("size must be positive")
    if chunk_size <= 0:
        raise ValueError("chunk_size must be positive")
    return math.ceil(size / chunk_size)


def expected_chunk_length(size: int, chunk_size: int, index: int) -> int:
    total = chunk_count(size, chunk_size)
    if index < 0 or index >= total:
        raise ValueError(f"chunk index {index} outside [0, {total})")
    if index < total - 1:
        return chunk_size
    return size - (total - 1) * chunk_size


@dataclass(frozen=True)
class ChunkDescriptor:
    index: int
    offset: int
    payload: bytes
    total_chunks: int

    @property
    def size(self) -> int:
        return len(self.payload)


class ChunkProducer:
    """Lazily yields the chunks of a file.

    Every iteration reopens the file and starts again from chunk 0, so the
    producer can be enumerated any number of times; a partially consumed
    iterator is not resumed.
    """

    def __init__(self, path: str | os.PathLike, chunk_size: int | None = None) -> None:
        self.path = Path(path)
        self.chunk_size = settings.chunk_size_bytes if chunk_size is None else chunk_size
        if self.chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.size = self.path.stat().st_size
        self.total_chunks = chunk_count(self.size, self.chunk_size) if self.size else 0

    def __len__(self) -> int:
        return self.total_chunks

    def __iter__(self) -> Iterator[ChunkDescriptor]:
        with self.path.open("rb") as handle:
            for index in range(self.total_chunks):
                offset = index * self.chunk_size
                payload = handle.read(self.chunk_size)
                yield ChunkDescriptor(index=index, offset=offset, payload=payload, total_chunks=self.total_chunks)

    def read(self, index: int) -> ChunkDescriptor:
        length = expected_chunk_length(self.size, self.chunk_size, index)
        offset = index * self.chunk_size
        with self.path.open("rb") as handle:
            handle.seek(offset)
            payload = handle.read(length)
        return ChunkDescriptor(index=index, offset=offset, payload=payload, total_chunks=self.total_chunks)
