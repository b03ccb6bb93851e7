"""
Chunk Reassembler

Design Decision: Staging Strategy
=================================

Options Considered:
1. Store each chunk as its own file, concatenate at the end
   - Simple dedup, but doubles disk I/O and needs a merge step
2. Keep chunks in memory until complete
   - Fast, but unbounded memory and nothing survives a restart
3. Preallocated staging file, write each chunk at its offset
   - One file, random-access writes, survives restarts

Decision: Preallocated staging file next to the final path
- Staging name is ".<name>N" in the same directory, so promotion
  is a same-filesystem rename and readers never see a partial file
- A chunk is acknowledged only after it is written, flushed and fsynced
- The acknowledged set can be rebuilt from the resume store after a restart

Layout:
```
files/
├── report.pdf        # promoted, verified
├── .video.mp40       # staging artifact of an in-flight transfer
└── .video.mp41       # second concurrent staging file for the same name
```
"""

import asyncio
import logging
import os
from pathlib import Path
from typing import Iterable, List, Optional, Set

import aiofiles
import aiofiles.os

from .chunker import Chunk, new_hasher
from .manifest import TransferManifest
from ..errors import ChunkCorrupt, IOWriteError, ProtocolError, WholeFileIntegrityFailure

logger = logging.getLogger(__name__)


def staging_path_for(final_path: Path, counter: int = 0) -> Path:
    """
    Staging path number ``counter`` for ``final_path``.

    ``/data/files/report.pdf`` becomes ``/data/files/.report.pdf0``, then
    ``.report.pdf1`` and so on. ``Reassembler.open()`` claims the first
    one that does not exist yet.
    """
    final_path = Path(final_path)
    return final_path.with_name(f".{final_path.name}{counter}")


class Reassembler:
    """
    Writes received chunks into a staging artifact and tracks completion.

    The staging file is owned by exactly one session. Nothing else writes
    to it until ``promote()`` renames it to the final path.
    """

    def __init__(self, manifest: TransferManifest, final_path: Path,
                 staging_path: Optional[Path] = None,
                 acknowledged: Iterable[int] = (),
                 backup_suffix: Optional[str] = None):
        self.manifest = manifest
        self.final_path = Path(final_path)
        # Unset until open() claims a fresh staging file
        self.staging_path: Optional[Path] = Path(staging_path) if staging_path else None
        self.backup_suffix = backup_suffix

        self._acknowledged: Set[int] = {
            i for i in acknowledged if 0 <= i < manifest.total_chunks
        }
        self._fh = None

    # === State ===

    @property
    def acknowledged(self) -> Set[int]:
        return set(self._acknowledged)

    @property
    def is_open(self) -> bool:
        return self._fh is not None

    @property
    def is_complete(self) -> bool:
        return len(self._acknowledged) == self.manifest.total_chunks

    @property
    def resume_cursor(self) -> int:
        """First chunk index not yet written (highest contiguous + 1)."""
        cursor = 0
        while cursor in self._acknowledged:
            cursor += 1
        return cursor

    def missing(self) -> List[int]:
        """Indices still to be received, in order."""
        return [i for i in range(self.manifest.total_chunks)
                if i not in self._acknowledged]

    # === Lifecycle ===

    async def open(self) -> bool:
        """
        Open the staging artifact, creating and preallocating it if needed.

        A given staging path is reopened when it still exists. Otherwise a
        new ``.<name>N`` file is created exclusively, so two sessions
        writing to the same final name never share a staging file.

        Returns:
            False if previously acknowledged chunks had to be dropped
            because the staging file was missing or had the wrong size
        """
        kept = True

        try:
            await aiofiles.os.makedirs(self.final_path.parent, exist_ok=True)

            if self.staging_path is not None and self.staging_path.exists():
                stat = await aiofiles.os.stat(self.staging_path)
                if stat.st_size != self.manifest.size:
                    logger.warning(
                        f"Staging file {self.staging_path} has {stat.st_size} bytes, "
                        f"expected {self.manifest.size}; starting over"
                    )
                    kept = not self._acknowledged
                    self._acknowledged.clear()
                self._fh = await aiofiles.open(self.staging_path, 'r+b')
            else:
                if self._acknowledged:
                    logger.warning(f"Staging file {self.staging_path} is gone; starting over")
                    self._acknowledged.clear()
                    kept = False
                await self._claim_staging()

            await self._fh.truncate(self.manifest.size)
        except OSError as e:
            raise IOWriteError(f"Cannot open staging file {self.staging_path}: {e}") from e

        return kept

    async def _claim_staging(self):
        counter = 0
        while True:
            candidate = staging_path_for(self.final_path, counter)
            try:
                self._fh = await aiofiles.open(candidate, 'x+b')
            except FileExistsError:
                counter += 1
                continue
            self.staging_path = candidate
            return

    async def close(self):
        """Release the file handle. The staging file stays for resumption."""
        if self._fh is not None:
            fh, self._fh = self._fh, None
            try:
                await fh.close()
            except OSError as e:
                logger.warning(f"Error closing {self.staging_path}: {e}")

    async def discard(self):
        """Close and delete the staging artifact."""
        await self.close()
        self._acknowledged.clear()
        if self.staging_path is None:
            return
        try:
            await aiofiles.os.remove(self.staging_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove staging file {self.staging_path}: {e}")

    # === Data path ===

    async def accept(self, chunk: Chunk) -> bool:
        """
        Verify and write one chunk.

        Returns:
            True if the chunk was written, False if it was a duplicate

        Raises:
            ProtocolError: index outside the manifest
            ChunkCorrupt: checksum or length mismatch (nothing written)
            IOWriteError: the staging artifact could not be written
        """
        index = chunk.index
        if index < 0 or index >= self.manifest.total_chunks:
            raise ProtocolError(
                f"Chunk index {index} outside 0..{self.manifest.total_chunks - 1}",
                index=index,
            )

        if not self.manifest.verify_chunk(index, chunk.payload, chunk.checksum):
            raise ChunkCorrupt(f"Checksum mismatch on chunk {index}", index=index)

        if index in self._acknowledged:
            return False

        if self._fh is None:
            raise IOWriteError("Staging file is not open", index=index)

        try:
            await self._fh.seek(self.manifest.chunk_offset(index))
            await self._fh.write(chunk.payload)
            await self._fh.flush()
            await asyncio.get_running_loop().run_in_executor(
                None, os.fsync, self._fh.fileno()
            )
        except OSError as e:
            raise IOWriteError(f"Failed writing chunk {index}: {e}", index=index) from e

        self._acknowledged.add(index)
        return True

    # === Completion ===

    async def compute_hash(self) -> str:
        """Hash the staging artifact with the manifest's algorithm."""
        hasher = new_hasher(self.manifest.algorithm)
        try:
            async with aiofiles.open(self.staging_path, 'rb') as f:
                while True:
                    data = await f.read(256 * 1024)
                    if not data:
                        break
                    hasher.update(data)
        except OSError as e:
            raise IOWriteError(f"Cannot read back {self.staging_path}: {e}") from e
        return hasher.hexdigest()

    async def verify(self):
        """
        Check the whole-file hash once every chunk is in.

        On mismatch the staging artifact is discarded.
        """
        if not self.is_complete:
            raise ProtocolError(f"Cannot verify with {len(self.missing())} chunks missing")

        await self.close()
        actual = await self.compute_hash()

        if actual != self.manifest.file_hash:
            await self.discard()
            raise WholeFileIntegrityFailure(
                f"File hash mismatch for {self.manifest.file_name}: "
                f"expected {self.manifest.file_hash[:16]}..., got {actual[:16]}..."
            )

    async def promote(self) -> Path:
        """
        Atomically move the verified staging artifact to its final path.

        An existing file at the final path is renamed to
        ``<name><backup_suffix>`` first when a suffix is configured.
        """
        await self.close()

        try:
            if self.backup_suffix and self.final_path.exists():
                backup_path = self.final_path.with_name(self.final_path.name + self.backup_suffix)
                await aiofiles.os.replace(self.final_path, backup_path)
                logger.info(f"Backed up existing {self.final_path.name} to {backup_path.name}")

            await aiofiles.os.replace(self.staging_path, self.final_path)
        except OSError as e:
            raise IOWriteError(f"Cannot promote {self.staging_path}: {e}") from e

        return self.final_path
