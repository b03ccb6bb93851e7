"""Test the resume store"""

import time

import pytest

from chunkxfer.file.manifest import TransferManifest, make_transfer_id
from chunkxfer.storage.database import (
    STATUS_CANCELLED, STATUS_COMPLETED, STATUS_IN_PROGRESS, Database, init_database,
)


def make_manifest(seed: str = 'ab', size: int = 10_000) -> TransferManifest:
    file_hash = seed * 32
    return TransferManifest(
        transfer_id=make_transfer_id(file_hash, size, 4096),
        file_name=f'{seed}.bin', size=size, chunk_size=4096,
        total_chunks=(size + 4095) // 4096, file_hash=file_hash,
    )


@pytest.fixture
async def database(temp_dir):
    db = await init_database(temp_dir)
    yield db
    await db.close()


class TestTransfers:
    """Test transfer records"""

    async def test_upsert_and_get(self, database, temp_dir):
        manifest = make_manifest()
        await database.upsert_transfer(manifest, temp_dir / '.ab.bin0', temp_dir / 'ab.bin')

        record = await database.get_transfer(manifest.transfer_id)
        assert record['file_name'] == 'ab.bin'
        assert record['total_chunks'] == 3
        assert record['status'] == STATUS_IN_PROGRESS
        assert record['resume_cursor'] == 0
        assert record['staging_path'] == str(temp_dir / '.ab.bin0')

    async def test_upsert_reopens_finished_record(self, database, temp_dir):
        manifest = make_manifest()
        await database.upsert_transfer(manifest, temp_dir / 's', temp_dir / 'f')
        await database.set_status(manifest.transfer_id, STATUS_CANCELLED, 'operator')
        await database.mark_chunk_acked(manifest.transfer_id, 0, 1)

        await database.upsert_transfer(manifest, temp_dir / 's', temp_dir / 'f')

        record = await database.get_transfer(manifest.transfer_id)
        assert record['status'] == STATUS_IN_PROGRESS
        assert record['detail'] == ''
        assert await database.get_acked_chunks(manifest.transfer_id) == [0]

    async def test_list_by_status(self, database, temp_dir):
        a, b = make_manifest('aa'), make_manifest('bb')
        await database.upsert_transfer(a, temp_dir / 'sa', temp_dir / 'fa')
        await database.upsert_transfer(b, temp_dir / 'sb', temp_dir / 'fb')
        await database.set_status(b.transfer_id, STATUS_COMPLETED)

        assert len(await database.list_transfers()) == 2
        completed = await database.list_transfers(STATUS_COMPLETED)
        assert [r['transfer_id'] for r in completed] == [b.transfer_id]

    async def test_delete_cascades_to_chunks(self, database, temp_dir):
        manifest = make_manifest()
        await database.upsert_transfer(manifest, temp_dir / 's', temp_dir / 'f')
        await database.mark_chunk_acked(manifest.transfer_id, 2, 0)

        await database.delete_transfer(manifest.transfer_id)

        assert await database.get_transfer(manifest.transfer_id) is None
        assert await database.get_acked_chunks(manifest.transfer_id) == []

    async def test_missing_record(self, database):
        assert await database.get_transfer('nope') is None


class TestChunks:
    """Test acknowledged chunk sets"""

    async def test_mark_is_idempotent(self, database, temp_dir):
        manifest = make_manifest()
        await database.upsert_transfer(manifest, temp_dir / 's', temp_dir / 'f')

        await database.mark_chunk_acked(manifest.transfer_id, 1, 0)
        await database.mark_chunk_acked(manifest.transfer_id, 0, 2)
        await database.mark_chunk_acked(manifest.transfer_id, 1, 2)

        assert await database.get_acked_chunks(manifest.transfer_id) == [0, 1]
        assert (await database.get_transfer(manifest.transfer_id))['resume_cursor'] == 2

    async def test_clear(self, database, temp_dir):
        manifest = make_manifest()
        await database.upsert_transfer(manifest, temp_dir / 's', temp_dir / 'f')
        await database.mark_chunk_acked(manifest.transfer_id, 0, 1)

        await database.clear_acked_chunks(manifest.transfer_id)

        assert await database.get_acked_chunks(manifest.transfer_id) == []
        assert (await database.get_transfer(manifest.transfer_id))['resume_cursor'] == 0


class TestPersistence:
    """Test state survives reconnecting"""

    async def test_survives_reconnect(self, temp_dir):
        manifest = make_manifest()

        db = await init_database(temp_dir)
        await db.upsert_transfer(manifest, temp_dir / 's', temp_dir / 'f')
        await db.mark_chunk_acked(manifest.transfer_id, 0, 1)
        await db.close()

        db = Database(temp_dir / 'transfers.db')
        await db.connect()
        try:
            assert await db.get_acked_chunks(manifest.transfer_id) == [0]
        finally:
            await db.close()

    async def test_expired(self, database, temp_dir):
        manifest = make_manifest()
        await database.upsert_transfer(manifest, temp_dir / 's', temp_dir / 'f')

        assert await database.get_expired(time.time() - 60) == []
        expired = await database.get_expired(time.time() + 60)
        assert [r['transfer_id'] for r in expired] == [manifest.transfer_id]
