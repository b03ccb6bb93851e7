"""
SQLite Database for Resume State

Design Decision: Why SQLite?
============================

Options Considered:
1. SQLite - Embedded, no server, ACID compliant
2. Sidecar JSON file per transfer - Simple, but rewriting it per chunk
   is slow and a crash mid-write corrupts it
3. Bitmap appended to the staging file - Compact, but ties the
   resume record to a file we may have to discard
4. PostgreSQL/MySQL - Overkill, requires server

Decision: SQLite with aiosqlite
- Zero configuration
- Each acknowledged chunk is one committed row, so the record never
  claims a chunk the staging file does not hold
- Single file next to the received data
- Async support via aiosqlite

Tables:
- transfers: one row per transfer identifier (manifest, paths, status, cursor)
- acked_chunks: every chunk index durably written for a transfer
"""

import logging
import time
from pathlib import Path
from typing import Dict, List, Optional

import aiosqlite

from ..file.manifest import TransferManifest

logger = logging.getLogger(__name__)

# Schema version for migrations
SCHEMA_VERSION = 1

STATUS_IN_PROGRESS = 'in_progress'
STATUS_COMPLETED = 'completed'
STATUS_FAILED = 'failed'
STATUS_CANCELLED = 'cancelled'


class Database:
    """
    SQLite database for persistent transfer state.

    Stores:
    - Manifest fields and paths for every transfer seen
    - The set of acknowledged chunks and the contiguous resume cursor
    - Terminal status, used for retention
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self):
        """Open database connection."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row

        # Enable foreign keys
        await self._connection.execute("PRAGMA foreign_keys = ON")

        # Initialize schema
        await self._init_schema()

        logger.info(f"Database connected: {self.db_path}")

    async def close(self):
        """Close database connection."""
        if self._connection:
            await self._connection.close()
            self._connection = None

    async def _init_schema(self):
        """Initialize database schema."""
        await self._connection.executescript("""
            -- One row per transfer identifier
            CREATE TABLE IF NOT EXISTS transfers (
                transfer_id TEXT PRIMARY KEY,
                file_name TEXT NOT NULL,
                size INTEGER NOT NULL,
                chunk_size INTEGER NOT NULL,
                total_chunks INTEGER NOT NULL,
                file_hash TEXT NOT NULL,
                algorithm TEXT NOT NULL,
                staging_path TEXT NOT NULL,
                final_path TEXT NOT NULL,
                status TEXT DEFAULT 'in_progress',
                resume_cursor INTEGER DEFAULT 0,
                detail TEXT DEFAULT '',
                started_at REAL NOT NULL,
                updated_at REAL NOT NULL
            );

            -- Chunks durably written to the staging file
            CREATE TABLE IF NOT EXISTS acked_chunks (
                transfer_id TEXT NOT NULL,
                chunk_index INTEGER NOT NULL,
                PRIMARY KEY (transfer_id, chunk_index),
                FOREIGN KEY (transfer_id) REFERENCES transfers(transfer_id) ON DELETE CASCADE
            );

            -- Create indexes
            CREATE INDEX IF NOT EXISTS idx_transfers_status ON transfers(status);
            CREATE INDEX IF NOT EXISTS idx_transfers_updated ON transfers(updated_at);
        """)

        await self._connection.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        await self._connection.commit()

    # === Transfers ===

    async def upsert_transfer(self, manifest: TransferManifest,
                              staging_path: Path, final_path: Path):
        """Create or reopen the record for a transfer."""
        now = time.time()
        await self._connection.execute(
            """INSERT INTO transfers (transfer_id, file_name, size, chunk_size,
                                      total_chunks, file_hash, algorithm,
                                      staging_path, final_path, started_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
               ON CONFLICT(transfer_id) DO UPDATE SET
                   file_name = excluded.file_name,
                   staging_path = excluded.staging_path,
                   final_path = excluded.final_path,
                   status = 'in_progress',
                   detail = '',
                   updated_at = excluded.updated_at""",
            (manifest.transfer_id, manifest.file_name, manifest.size,
             manifest.chunk_size, manifest.total_chunks, manifest.file_hash,
             manifest.algorithm, str(staging_path), str(final_path), now, now)
        )
        await self._connection.commit()

    async def get_transfer(self, transfer_id: str) -> Optional[Dict]:
        """Get a transfer record."""
        async with self._connection.execute(
            "SELECT * FROM transfers WHERE transfer_id = ?", (transfer_id,)
        ) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row else None

    async def list_transfers(self, status: Optional[str] = None) -> List[Dict]:
        """List transfer records, most recently updated first."""
        if status:
            query = "SELECT * FROM transfers WHERE status = ? ORDER BY updated_at DESC"
            params = (status,)
        else:
            query = "SELECT * FROM transfers ORDER BY updated_at DESC"
            params = ()

        async with self._connection.execute(query, params) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]

    async def set_status(self, transfer_id: str, status: str, detail: str = ""):
        """Record a terminal (or reopened) status."""
        await self._connection.execute(
            """UPDATE transfers SET status = ?, detail = ?, updated_at = ?
               WHERE transfer_id = ?""",
            (status, detail, time.time(), transfer_id)
        )
        await self._connection.commit()

    async def delete_transfer(self, transfer_id: str):
        """Forget a transfer and its acknowledged chunks."""
        await self._connection.execute(
            "DELETE FROM transfers WHERE transfer_id = ?", (transfer_id,)
        )
        await self._connection.commit()

    # === Chunks ===

    async def mark_chunk_acked(self, transfer_id: str, chunk_index: int,
                               resume_cursor: int):
        """Record a durably written chunk and the new contiguous cursor."""
        await self._connection.execute(
            """INSERT INTO acked_chunks (transfer_id, chunk_index)
               VALUES (?, ?)
               ON CONFLICT DO NOTHING""",
            (transfer_id, chunk_index)
        )
        await self._connection.execute(
            """UPDATE transfers SET resume_cursor = ?, updated_at = ?
               WHERE transfer_id = ?""",
            (resume_cursor, time.time(), transfer_id)
        )
        await self._connection.commit()

    async def get_acked_chunks(self, transfer_id: str) -> List[int]:
        """Get list of acknowledged chunk indices."""
        async with self._connection.execute(
            """SELECT chunk_index FROM acked_chunks WHERE transfer_id = ?
               ORDER BY chunk_index""",
            (transfer_id,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [row['chunk_index'] for row in rows]

    async def clear_acked_chunks(self, transfer_id: str):
        """Drop the acknowledged set, e.g. when the staging file was lost."""
        await self._connection.execute(
            "DELETE FROM acked_chunks WHERE transfer_id = ?", (transfer_id,)
        )
        await self._connection.execute(
            "UPDATE transfers SET resume_cursor = 0 WHERE transfer_id = ?",
            (transfer_id,)
        )
        await self._connection.commit()

    # === Retention ===

    async def get_expired(self, before: float) -> List[Dict]:
        """Get records last touched before ``before`` (epoch seconds)."""
        async with self._connection.execute(
            "SELECT * FROM transfers WHERE updated_at < ?", (before,)
        ) as cursor:
            rows = await cursor.fetchall()
            return [dict(row) for row in rows]


async def init_database(data_dir: Path) -> Database:
    """Initialize and return a database instance."""
    db_path = Path(data_dir) / "transfers.db"
    db = Database(db_path)
    await db.connect()
    return db
