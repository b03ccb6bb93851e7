"""
Transfer Manifest

Design Decision: Transfer Identifier
====================================

The manifest describes one file transfer before any data is sent:
- File identification (name, size, whole-file hash)
- Chunk layout (chunk size, chunk count)
- The transfer identifier

Options Considered for the identifier:
1. Random UUID per attempt - Simple, but a reconnect looks like a new file
2. File name + mtime - Cheap, but renames break resumption
3. Content hash only - Resumable, but two chunk sizes would collide
4. Content hash + size + chunk size - Resumable and unambiguous

Decision: sha256("<file_hash>:<size>:<chunk_size>"), 32 hex chars
- Same bytes sent with the same chunk size always map to the same transfer
- A receiver can resume from whatever it already has for that identifier
- Pure function, no coordination needed between sender and receiver
"""

import hashlib
from dataclasses import asdict, dataclass
from pathlib import Path, PurePosixPath
from typing import Dict, List, Optional

from .chunker import CHUNK_SIZE, DEFAULT_ALGORITHM, FileChunker, compute_checksum


def make_transfer_id(file_hash: str, size: int, chunk_size: int) -> str:
    """Derive the transfer identifier from content hash, size and chunk size."""
    key = f"{file_hash}:{size}:{chunk_size}".encode('utf-8')
    return hashlib.sha256(key).hexdigest()[:32]


def chunk_count_for(size: int, chunk_size: int) -> int:
    """Number of chunks a file of ``size`` bytes splits into."""
    return (size + chunk_size - 1) // chunk_size


@dataclass(frozen=True)
class TransferManifest:
    """
    Metadata for one file transfer.

    Immutable once created. The receiver checks it with ``problems()``
    before accepting.
    """
    transfer_id: str
    file_name: str
    size: int
    chunk_size: int
    total_chunks: int
    file_hash: str
    algorithm: str = DEFAULT_ALGORITHM

    def chunk_length(self, index: int) -> int:
        """Expected payload length of chunk ``index``."""
        start = index * self.chunk_size
        return max(0, min(self.chunk_size, self.size - start))

    def chunk_offset(self, index: int) -> int:
        return index * self.chunk_size

    def verify_chunk(self, index: int, data: bytes, checksum: str) -> bool:
        """Verify a chunk's data against its checksum and expected length."""
        if index < 0 or index >= self.total_chunks:
            return False
        if len(data) != self.chunk_length(index):
            return False
        return compute_checksum(data, self.algorithm) == checksum

    def problems(self) -> List[str]:
        """List everything that makes this manifest unacceptable."""
        issues = []

        if self.size < 0:
            issues.append(f"negative size {self.size}")
        if self.chunk_size <= 0:
            issues.append(f"invalid chunk size {self.chunk_size}")
        elif self.total_chunks != chunk_count_for(self.size, self.chunk_size):
            issues.append(
                f"chunk count {self.total_chunks} does not match "
                f"size {self.size} / chunk size {self.chunk_size}"
            )
        if self.algorithm not in hashlib.algorithms_available:
            issues.append(f"unsupported hash algorithm {self.algorithm}")
        if self.transfer_id != make_transfer_id(self.file_hash, self.size, self.chunk_size):
            issues.append("transfer id does not match manifest contents")
        if not is_safe_name(self.file_name):
            issues.append(f"unsafe file name {self.file_name!r}")

        return issues

    def to_dict(self) -> Dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict) -> 'TransferManifest':
        return cls(
            transfer_id=data['transfer_id'],
            file_name=data['file_name'],
            size=data['size'],
            chunk_size=data['chunk_size'],
            total_chunks=data['total_chunks'],
            file_hash=data['file_hash'],
            algorithm=data.get('algorithm', DEFAULT_ALGORITHM),
        )


def is_safe_name(file_name: str) -> bool:
    """
    Check that a remote file name stays inside the receiver's files dir.

    Relative paths with subdirectories are allowed; absolute paths,
    ``..`` components and empty names are not.
    """
    if not file_name or '\x00' in file_name or '\\' in file_name:
        return False

    if PurePosixPath(file_name).is_absolute():
        return False

    return all(part not in ('', '.', '..') for part in file_name.split('/'))


async def create_manifest(file_path: Path, chunk_size: int = CHUNK_SIZE,
                          algorithm: str = DEFAULT_ALGORITHM,
                          file_name: Optional[str] = None) -> TransferManifest:
    """
    Create a manifest for a file.

    Args:
        file_path: Path to the file
        chunk_size: Size of each chunk
        algorithm: Hash algorithm for chunk and whole-file checksums
        file_name: Name to use on the receiver (defaults to the local name)

    Returns:
        TransferManifest object
    """
    file_path = Path(file_path)
    if not file_path.is_file():
        raise FileNotFoundError(f"File not found: {file_path}")

    chunker = FileChunker(chunk_size=chunk_size, algorithm=algorithm)

    size = file_path.stat().st_size
    file_hash = await chunker.compute_file_hash(file_path)

    return TransferManifest(
        transfer_id=make_transfer_id(file_hash, size, chunk_size),
        file_name=file_name or file_path.name,
        size=size,
        chunk_size=chunk_size,
        total_chunks=chunker.get_chunk_count(size),
        file_hash=file_hash,
        algorithm=algorithm,
    )
