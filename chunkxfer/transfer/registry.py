"""
Session Registry

Design Decision: Synchronization
================================

Options Considered:
1. One dict behind one lock - Simple, but every lookup from every
   session waits on the same lock
2. One lock per entry - Fine-grained, but inserting a new entry
   still needs something to guard the dict itself
3. Sharded dict, one lock per shard - Bounded number of locks,
   unrelated transfers rarely contend

Decision: Sharded registry (16 shards by default)
- Transfer ids are hashed to a shard; insert-if-absent, lookup and
  remove only take that shard's lock
- Sessions never share mutable state except through this registry

Resume records outlive sessions: they live in the database, and the
registry is the one place that reads them at negotiation time and
purges them once the retention window has passed.
"""

import asyncio
import logging
import time
import zlib
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

import aiofiles.os

from .session import TransferSession
from ..storage.database import STATUS_COMPLETED, Database

logger = logging.getLogger(__name__)


class _Shard:
    """One slice of the registry and the lock that guards it."""

    def __init__(self):
        self.lock = asyncio.Lock()
        self.sessions: Dict[str, TransferSession] = {}


class SessionRegistry:
    """
    Maps transfer identifiers to live sessions on the receiving side.
    """

    def __init__(self, shard_count: int = 16, database: Optional[Database] = None):
        if shard_count < 1:
            raise ValueError("shard_count must be at least 1")
        self._shards = [_Shard() for _ in range(shard_count)]
        self.database = database

    def _shard(self, transfer_id: str) -> _Shard:
        return self._shards[zlib.crc32(transfer_id.encode('utf-8')) % len(self._shards)]

    # === Session operations ===

    async def insert_if_absent(self, transfer_id: str,
                               factory: Callable[[], TransferSession]
                               ) -> Tuple[TransferSession, bool]:
        """
        Atomically register a new session unless one exists.

        Returns:
            (session, created) - the existing session and False, or the
            session built by ``factory`` and True
        """
        shard = self._shard(transfer_id)
        async with shard.lock:
            existing = shard.sessions.get(transfer_id)
            if existing is not None:
                return existing, False
            session = factory()
            shard.sessions[transfer_id] = session
            return session, True

    async def lookup(self, transfer_id: str) -> Optional[TransferSession]:
        shard = self._shard(transfer_id)
        async with shard.lock:
            return shard.sessions.get(transfer_id)

    async def remove(self, transfer_id: str,
                     session: Optional[TransferSession] = None) -> Optional[TransferSession]:
        """
        Remove a session.

        If ``session`` is given, only remove the entry when it is still
        that exact session (a newer one may have replaced it).
        """
        shard = self._shard(transfer_id)
        async with shard.lock:
            current = shard.sessions.get(transfer_id)
            if current is None:
                return None
            if session is not None and current is not session:
                return None
            return shard.sessions.pop(transfer_id)

    def peek(self, transfer_id: str) -> Optional[TransferSession]:
        """Lock-free read for status reporting."""
        return self._shard(transfer_id).sessions.get(transfer_id)

    def sessions(self) -> List[TransferSession]:
        """Snapshot of every registered session."""
        result = []
        for shard in self._shards:
            result.extend(shard.sessions.values())
        return result

    def active(self) -> List[TransferSession]:
        """Sessions not yet in a terminal phase."""
        return [s for s in self.sessions() if not s.is_terminal]

    def expired(self, grace_period: float, now: Optional[float] = None) -> List[TransferSession]:
        """Terminal sessions whose grace period is over."""
        now = time.monotonic() if now is None else now
        return [
            s for s in self.sessions()
            if s.is_terminal and s.finished_at is not None
            and now - s.finished_at >= grace_period
        ]

    def __len__(self) -> int:
        return sum(len(shard.sessions) for shard in self._shards)

    def __contains__(self, transfer_id: str) -> bool:
        return self.peek(transfer_id) is not None

    # === Resume records ===

    async def resume_record(self, transfer_id: str) -> Optional[Dict]:
        """
        Persisted progress for a transfer, if any.

        Returns:
            The transfer row plus an ``acked`` list of chunk indices, or
            None when there is nothing to resume
        """
        if self.database is None:
            return None

        record = await self.database.get_transfer(transfer_id)
        if record is None or record['status'] == STATUS_COMPLETED:
            return None

        record['acked'] = await self.database.get_acked_chunks(transfer_id)
        return record

    async def purge_retained(self, retention_seconds: float,
                             now: Optional[float] = None) -> int:
        """
        Drop resume records (and their staging files) older than the
        retention window. Transfers with a live session are kept.

        Returns:
            Number of records purged
        """
        if self.database is None:
            return 0

        now = time.time() if now is None else now
        purged = 0

        for record in await self.database.get_expired(now - retention_seconds):
            transfer_id = record['transfer_id']
            session = self.peek(transfer_id)
            if session is not None and not session.is_terminal:
                continue

            if record['status'] != STATUS_COMPLETED:
                try:
                    await aiofiles.os.remove(Path(record['staging_path']))
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning(f"Could not remove {record['staging_path']}: {e}")

            await self.database.delete_transfer(transfer_id)
            purged += 1
            logger.info(f"Purged resume record for {transfer_id[:12]}... ({record['status']})")

        return purged
