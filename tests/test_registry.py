"""Test the sharded session registry"""

import asyncio
import time

import pytest

from chunkxfer.file.manifest import TransferManifest, make_transfer_id
from chunkxfer.storage.database import STATUS_COMPLETED, STATUS_FAILED, init_database
from chunkxfer.transfer.registry import SessionRegistry
from chunkxfer.transfer.session import Phase, ReceiverSession


def make_session(config, seed: str = 'ab') -> ReceiverSession:
    file_hash = seed * 32
    manifest = TransferManifest(
        transfer_id=make_transfer_id(file_hash, 100, 10), file_name=f'{seed}.bin',
        size=100, chunk_size=10, total_chunks=10, file_hash=file_hash,
    )
    return ReceiverSession(manifest, config.files_dir / manifest.file_name,
                           send=lambda m: None, config=config)


class TestSessions:
    """Test insert, lookup and removal"""

    async def test_insert_if_absent(self, config):
        registry = SessionRegistry(shard_count=4)
        first = make_session(config)

        session, created = await registry.insert_if_absent(first.transfer_id, lambda: first)
        assert created and session is first

        other = make_session(config)
        session, created = await registry.insert_if_absent(first.transfer_id, lambda: other)
        assert not created and session is first

        assert await registry.lookup(first.transfer_id) is first
        assert first.transfer_id in registry
        assert len(registry) == 1

    async def test_concurrent_inserts_create_one_session(self, config):
        registry = SessionRegistry()
        built = []

        def factory():
            session = make_session(config)
            built.append(session)
            return session

        tid = make_session(config).transfer_id
        results = await asyncio.gather(*[registry.insert_if_absent(tid, factory)
                                         for _ in range(20)])

        assert len(built) == 1
        assert sum(created for _, created in results) == 1
        assert {id(s) for s, _ in results} == {id(built[0])}

    async def test_conditional_remove(self, config):
        registry = SessionRegistry()
        old, new = make_session(config), make_session(config)

        await registry.insert_if_absent(old.transfer_id, lambda: old)
        await registry.remove(old.transfer_id)
        await registry.insert_if_absent(new.transfer_id, lambda: new)

        # A stale remove must not evict the replacement
        assert await registry.remove(old.transfer_id, old) is None
        assert registry.peek(new.transfer_id) is new
        assert await registry.remove(new.transfer_id, new) is new
        assert len(registry) == 0

    async def test_sessions_spread_over_shards(self, config):
        registry = SessionRegistry(shard_count=8)
        for seed in ('aa', 'bb', 'cc', 'dd', 'ee', 'ff'):
            session = make_session(config, seed)
            await registry.insert_if_absent(session.transfer_id, lambda s=session: s)

        assert len(registry.sessions()) == 6
        assert len(registry.active()) == 6

    async def test_expired(self, config):
        registry = SessionRegistry()
        session = make_session(config)
        await registry.insert_if_absent(session.transfer_id, lambda: session)

        session.cancel("test")
        session._check_cancel()
        assert session.phase is Phase.CANCELLED

        assert registry.active() == []
        assert registry.expired(grace_period=60) == []
        assert registry.expired(grace_period=60, now=time.monotonic() + 61) == [session]

    def test_rejects_zero_shards(self):
        with pytest.raises(ValueError):
            SessionRegistry(shard_count=0)


class TestResumeRecords:
    """Test resume record lookup and retention"""

    async def test_resume_record(self, config, temp_dir):
        database = await init_database(config.data_dir)
        registry = SessionRegistry(database=database)
        session = make_session(config)
        tid = session.transfer_id

        try:
            assert await registry.resume_record(tid) is None

            await database.upsert_transfer(session.manifest, temp_dir / 's', temp_dir / 'f')
            await database.mark_chunk_acked(tid, 0, 1)
            await database.mark_chunk_acked(tid, 4, 1)

            record = await registry.resume_record(tid)
            assert record['acked'] == [0, 4]

            await database.set_status(tid, STATUS_COMPLETED)
            assert await registry.resume_record(tid) is None
        finally:
            await database.close()

    async def test_purge_removes_staging(self, config, temp_dir):
        database = await init_database(config.data_dir)
        registry = SessionRegistry(database=database)
        session = make_session(config)
        staging = temp_dir / '.ab.bin0'
        staging.write_bytes(b'partial')

        try:
            await database.upsert_transfer(session.manifest, staging, temp_dir / 'ab.bin')
            await database.set_status(session.transfer_id, STATUS_FAILED)

            assert await registry.purge_retained(3600) == 0
            assert await registry.purge_retained(3600, now=time.time() + 7200) == 1

            assert not staging.exists()
            assert await database.get_transfer(session.transfer_id) is None
        finally:
            await database.close()

    async def test_purge_skips_live_sessions(self, config, temp_dir):
        database = await init_database(config.data_dir)
        registry = SessionRegistry(database=database)
        session = make_session(config)

        try:
            await registry.insert_if_absent(session.transfer_id, lambda: session)
            await database.upsert_transfer(session.manifest, temp_dir / 's', temp_dir / 'f')

            assert await registry.purge_retained(0, now=time.time() + 10) == 0
            assert await database.get_transfer(session.transfer_id) is not None
        finally:
            await database.close()
