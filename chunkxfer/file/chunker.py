"""
File Chunker

Design Decision: Chunk Size
===========================

Chunks travel in single datagrams, so the upper bound is the UDP payload
limit (~64KB) minus the message header.

Options Considered:
| Size    | Pros                          | Cons                           |
|---------|-------------------------------|--------------------------------|
| 1KB     | Never fragmented on the wire  | Many chunks, many acks         |
| 16KB    | Good balance on LAN           | IP fragmentation on WAN        |
| 60KB    | Lowest per-chunk overhead     | One lost fragment loses it all |

Decision: 16KB default, configurable up to 60KB
- The chunk size is part of the transfer identifier, so both sides
  always agree on it for a given transfer

Chunking Strategy: Fixed-Size, Lazy
- Chunk i always lives at byte offset i * chunk_size
- Chunks are read on demand (restartable by index), never all in memory
- A retransmission re-reads the chunk from disk
"""

import hashlib
import os
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Tuple

import aiofiles

from ..errors import IOReadError

# Chunk size: 16KB
CHUNK_SIZE = 16 * 1024

DEFAULT_ALGORITHM = 'sha256'


def new_hasher(algorithm: str = DEFAULT_ALGORITHM):
    """Create a hash object for the configured algorithm."""
    return hashlib.new(algorithm)


def compute_checksum(data: bytes, algorithm: str = DEFAULT_ALGORITHM) -> str:
    """Checksum of a chunk payload as hex."""
    hasher = new_hasher(algorithm)
    hasher.update(data)
    return hasher.hexdigest()


@dataclass(frozen=True)
class Chunk:
    """One indexed slice of a file plus its checksum."""
    index: int
    payload: bytes
    checksum: str

    @property
    def size(self) -> int:
        return len(self.payload)

    def verify(self, algorithm: str = DEFAULT_ALGORITHM) -> bool:
        """Check the payload against the carried checksum."""
        return compute_checksum(self.payload, algorithm) == self.checksum


class FileChunker:
    """
    Splits files into fixed-size chunks for transfer.

    Features:
    - Random access by chunk index
    - Per-chunk checksum with a configurable hash algorithm
    - Async file reading
    """

    def __init__(self, chunk_size: int = CHUNK_SIZE,
                 algorithm: str = DEFAULT_ALGORITHM):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self.chunk_size = chunk_size
        self.algorithm = algorithm

    def get_chunk_count(self, file_size: int) -> int:
        """Calculate number of chunks for a file of given size."""
        return (file_size + self.chunk_size - 1) // self.chunk_size

    def get_chunk_bounds(self, chunk_index: int, file_size: int) -> Tuple[int, int]:
        """
        Get byte range for a specific chunk.

        Returns:
            (start_offset, length) tuple
        """
        start = chunk_index * self.chunk_size
        length = min(self.chunk_size, file_size - start)
        return start, length

    async def produce(self, file_path: Path, chunk_index: int,
                      expected_size: int) -> Chunk:
        """
        Read one chunk of a file.

        Args:
            file_path: Source file
            chunk_index: Index of the chunk to read
            expected_size: File size recorded in the manifest

        Raises:
            IndexError: chunk_index is outside the file
            IOReadError: the file is unreadable or changed size
        """
        chunk_count = self.get_chunk_count(expected_size)
        if chunk_index < 0 or chunk_index >= chunk_count:
            raise IndexError(f"Chunk index {chunk_index} out of range (0..{chunk_count - 1})")

        try:
            actual_size = os.stat(file_path).st_size
        except OSError as e:
            raise IOReadError(f"Cannot stat {file_path}: {e}", index=chunk_index) from e

        if actual_size != expected_size:
            raise IOReadError(
                f"{file_path} changed size during transfer "
                f"({expected_size} -> {actual_size} bytes)",
                index=chunk_index,
            )

        start, length = self.get_chunk_bounds(chunk_index, expected_size)

        try:
            async with aiofiles.open(file_path, 'rb') as f:
                await f.seek(start)
                data = await f.read(length)
        except OSError as e:
            raise IOReadError(f"Cannot read {file_path}: {e}", index=chunk_index) from e

        if len(data) != length:
            raise IOReadError(
                f"Short read on chunk {chunk_index}: {len(data)}/{length} bytes",
                index=chunk_index,
            )

        return Chunk(
            index=chunk_index,
            payload=data,
            checksum=compute_checksum(data, self.algorithm),
        )

    async def chunk_file(self, file_path: Path) -> AsyncIterator[Chunk]:
        """
        Split a file into chunks.

        Yields:
            Chunk objects in index order
        """
        file_size = Path(file_path).stat().st_size

        for chunk_index in range(self.get_chunk_count(file_size)):
            yield await self.produce(file_path, chunk_index, file_size)

    async def compute_file_hash(self, file_path: Path) -> str:
        """Compute the whole-file hash (hex) used in the manifest."""
        hasher = new_hasher(self.algorithm)

        try:
            async with aiofiles.open(file_path, 'rb') as f:
                while True:
                    data = await f.read(256 * 1024)
                    if not data:
                        break
                    hasher.update(data)
        except OSError as e:
            raise IOReadError(f"Cannot read {file_path}: {e}") from e

        return hasher.hexdigest()
