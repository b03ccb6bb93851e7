"""Test the status API"""

import asyncio

import httpx
import pytest

from chunkxfer.api import create_app
from chunkxfer.transfer import TransferClient, TransferServer


@pytest.fixture
async def server(config):
    server = TransferServer(config)
    await server.start()
    yield server
    await server.stop()


@pytest.fixture
async def api(server):
    transport = httpx.ASGITransport(app=create_app(server))
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class TestStatus:
    """Test read-only endpoints"""

    async def test_root(self, api):
        response = await api.get("/")
        assert response.status_code == 200
        assert response.json()['status'] == 'running'

    async def test_status(self, api, server):
        response = await api.get("/status")
        assert response.status_code == 200

        body = response.json()
        assert body['running'] is True
        assert body['active_transfers'] == 0
        assert body['address'].endswith(f":{server.address[1]}")

    async def test_not_running(self):
        transport = httpx.ASGITransport(app=create_app(None))
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
            response = await client.get("/status")
        assert response.status_code == 503

    async def test_unknown_transfer(self, api):
        assert (await api.get("/transfers/abc")).status_code == 404
        assert (await api.delete("/transfers/abc")).status_code == 404


class TestTransfers:
    """Test views of real transfers"""

    async def test_history_and_outcomes(self, api, server, config, make_file):
        source = make_file('logged.bin', size=12_000)

        async with TransferClient('127.0.0.1', server.address[1], config) as client:
            outcome = await asyncio.wait_for(client.send_file(source), timeout=15)
        assert outcome.completed
        await asyncio.sleep(config.grace_period * 2)

        history = (await api.get("/history")).json()
        assert history[0]['file_name'] == 'logged.bin'
        assert history[0]['status'] == 'completed'

        filtered = (await api.get("/history", params={'status': 'failed'})).json()
        assert filtered == []

        outcomes = (await api.get("/outcomes")).json()
        assert outcomes[0]['transfer_id'] == outcome.transfer_id
        assert outcomes[0]['phase'] == 'completed'

    async def test_live_transfer_and_cancel(self, api, server, config, make_file):
        config.chunk_size = 1024
        config.window_size = 1
        source = make_file(size=300 * 1024)
        seen = asyncio.Event()

        def on_progress(session):
            if session.acknowledged_count >= 2:
                seen.set()

        async with TransferClient('127.0.0.1', server.address[1], config) as client:
            sending = asyncio.create_task(client.send_file(source, progress_callback=on_progress))
            await asyncio.wait_for(seen.wait(), timeout=10)

            listing = (await api.get("/transfers")).json()
            assert len(listing) == 1
            transfer_id = listing[0]['transfer_id']
            assert listing[0]['role'] == 'receiver'

            detail = (await api.get(f"/transfers/{transfer_id}")).json()
            assert detail['total_chunks'] == 300

            response = await api.delete(f"/transfers/{transfer_id}")
            assert response.json() == {'transfer_id': transfer_id, 'cancelled': True}

            outcome = await asyncio.wait_for(sending, timeout=10)

        assert outcome.phase.value == 'cancelled'
