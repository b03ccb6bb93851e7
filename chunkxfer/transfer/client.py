"""
Transfer Client

Design Decision: Sessions per Endpoint
======================================

Options Considered:
1. One socket per transfer
   - Trivial routing, but every file costs a port
2. One socket per client, messages routed by transfer id
   - Several files can be in flight to the same server at once

Decision: One endpoint per client
- Each send_file() call owns one SenderSession
- Incoming messages are delivered to the session named by their
  transfer_id; messages for unknown ids are dropped
- Two concurrent sends of the same content (same transfer id) are
  refused, since the server would treat them as one transfer

Upload Flow:
1. Hash the file and build the manifest
2. Negotiate (the server may report a resume cursor)
3. Stream chunks from the cursor under the sliding window
4. Wait for the server's whole-file verdict
"""

import logging
from pathlib import Path
from typing import Dict, List, Optional

from .protocol import Message
from .session import ProgressCallback, SenderSession, TransferOutcome
from .transport import Address, DatagramEndpoint, Impairment, open_endpoint
from ..config import Config
from ..errors import IOReadError, TransportUnavailable
from ..file.manifest import TransferManifest, create_manifest

logger = logging.getLogger(__name__)


class TransferClient:
    """
    Sends files to a TransferServer.

    Usage:
        async with TransferClient('10.0.0.5', 5690) as client:
            outcome = await client.send_file(Path('report.pdf'))
    """

    def __init__(self, host: str, port: int, config: Optional[Config] = None,
                 impairment: Optional[Impairment] = None):
        self.server_address: Address = (host, port)
        self.config = config or Config()
        self.impairment = impairment
        self.endpoint: Optional[DatagramEndpoint] = None
        self._sessions: Dict[str, SenderSession] = {}

    @property
    def is_connected(self) -> bool:
        return self.endpoint is not None and self.endpoint.is_open

    @property
    def active_transfers(self) -> List[SenderSession]:
        return list(self._sessions.values())

    async def connect(self):
        """Bind a local endpoint on an ephemeral port."""
        if self.is_connected:
            return
        self.endpoint = await open_endpoint(
            self._on_datagram, host='0.0.0.0', port=0, impairment=self.impairment,
        )

    async def close(self):
        """Cancel running sends and release the endpoint."""
        for session in list(self._sessions.values()):
            session.cancel("client closing")
        if self.endpoint:
            self.endpoint.close()
            await self.endpoint.closed.wait()
        self.endpoint = None

    async def __aenter__(self) -> 'TransferClient':
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _on_datagram(self, message: Message, addr: Address):
        session = self._sessions.get(message.transfer_id)
        if session is None:
            logger.debug(f"Dropping {message.TYPE.value} for unknown transfer "
                         f"{message.transfer_id[:12]}")
            return
        session.deliver(message)

    def _send(self, message: Message):
        if self.endpoint is None:
            raise TransportUnavailable("Client is not connected")
        self.endpoint.send(message, self.server_address)

    async def prepare(self, file_path: Path,
                      remote_name: Optional[str] = None) -> TransferManifest:
        """
        Hash a file and build its manifest.

        Raises:
            IOReadError: the file is missing or unreadable
        """
        try:
            return await create_manifest(
                file_path,
                chunk_size=self.config.chunk_size,
                algorithm=self.config.hash_algorithm,
                file_name=remote_name,
            )
        except FileNotFoundError as e:
            raise IOReadError(str(e)) from e

    async def send_file(self, file_path: Path, remote_name: Optional[str] = None,
                        progress_callback: Optional[ProgressCallback] = None
                        ) -> TransferOutcome:
        """
        Upload one file and wait for the server's verdict.

        Args:
            file_path: Local file to send
            remote_name: Relative name on the server (defaults to the file name)
            progress_callback: Called with the session on every ack and transition

        Returns:
            The session outcome; failures are reported in it, not raised

        Raises:
            TransportUnavailable: the client is not connected
            IOReadError: the file could not be hashed
            ValueError: the same content is already being sent
        """
        if not self.is_connected:
            raise TransportUnavailable("Client is not connected")

        file_path = Path(file_path)
        manifest = await self.prepare(file_path, remote_name)

        if manifest.transfer_id in self._sessions:
            raise ValueError(f"{file_path.name} is already being sent "
                             f"as {manifest.transfer_id[:12]}")

        session = SenderSession(
            manifest, file_path,
            send=self._send,
            config=self.config,
            progress_callback=progress_callback,
        )
        session.peer = self.server_address
        self._sessions[manifest.transfer_id] = session

        logger.info(f"Sending {manifest.file_name} ({manifest.size:,} bytes, "
                    f"{manifest.total_chunks} chunks) to {self.server_address}")
        try:
            outcome = await session.run()
        finally:
            self._sessions.pop(manifest.transfer_id, None)

        if outcome.completed:
            logger.info(f"Sent {manifest.file_name} in {outcome.duration_s:.2f}s "
                        f"({outcome.retransmits} retransmits)")
        else:
            logger.warning(f"Transfer of {manifest.file_name} ended {outcome.phase.value}: "
                           f"{outcome.reason} {outcome.detail}")
        return outcome

    def cancel(self, transfer_id: str, reason: str = "cancelled by user") -> bool:
        session = self._sessions.get(transfer_id)
        if session is None:
            return False
        session.cancel(reason)
        return True
