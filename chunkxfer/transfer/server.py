"""
Transfer Server

Receives files from any number of clients over one UDP endpoint.

Incoming datagrams are decoded by the endpoint and queued; a single
router task looks up (or creates) the session for each message's
transfer id and delivers it. Each session runs in its own task, so a
slow disk on one transfer never stalls the others.

A maintenance task purges resume records once the retention window
has passed.
"""

import asyncio
import logging
from collections import deque
from typing import Deque, Dict, List, Optional, Set

from .protocol import Cancel, Manifest, Message, NegotiationAck
from .registry import SessionRegistry
from .session import Phase, ReceiverSession, TransferOutcome, TransferSession
from .transport import Address, DatagramEndpoint, Impairment, open_endpoint
from ..config import Config
from ..errors import TransferError, TransportUnavailable
from ..storage.database import Database, init_database

logger = logging.getLogger(__name__)

# Seconds between resume-record purges
MAINTENANCE_INTERVAL = 60.0

# Outcomes kept in memory for the status API
HISTORY_SIZE = 100


class TransferServer:
    """
    Server side of the chunked transfer protocol.

    Usage:
        server = TransferServer(config)
        await server.start()
        ...
        await server.stop()
    """

    def __init__(self, config: Optional[Config] = None,
                 impairment: Optional[Impairment] = None):
        self.config = config or Config()
        self.impairment = impairment

        self.database: Optional[Database] = None
        self.registry: Optional[SessionRegistry] = None
        self.endpoint: Optional[DatagramEndpoint] = None

        self._incoming: asyncio.Queue = asyncio.Queue()
        self._session_tasks: Set[asyncio.Task] = set()
        self._router_task: Optional[asyncio.Task] = None
        self._maintenance_task: Optional[asyncio.Task] = None
        self._running = False

        self.recent_outcomes: Deque[TransferOutcome] = deque(maxlen=HISTORY_SIZE)

        # Statistics
        self.transfers_started = 0
        self.transfers_completed = 0
        self.transfers_failed = 0
        self.transfers_cancelled = 0
        self.rejected_busy = 0
        self.bytes_received = 0

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def address(self) -> Optional[Address]:
        return self.endpoint.local_address if self.endpoint else None

    # === Lifecycle ===

    async def start(self):
        """Open the resume store and bind the endpoint."""
        if self._running:
            return

        self.config.files_dir.mkdir(parents=True, exist_ok=True)
        self.database = await init_database(self.config.data_dir)
        self.registry = SessionRegistry(database=self.database)

        try:
            self.endpoint = await open_endpoint(
                self._on_datagram,
                host=self.config.host,
                port=self.config.port,
                impairment=self.impairment,
            )
        except TransportUnavailable:
            await self.database.close()
            raise

        self._running = True
        self._router_task = asyncio.create_task(self._route_loop())
        self._maintenance_task = asyncio.create_task(self._maintenance_loop())

        logger.info(f"Transfer server listening on {self.address}, "
                    f"storing files in {self.config.files_dir}")

    async def stop(self):
        """Cancel live sessions, close the endpoint and the database."""
        if not self._running:
            return
        self._running = False

        for task in (self._router_task, self._maintenance_task):
            if task:
                task.cancel()

        for task in list(self._session_tasks):
            task.cancel()

        await asyncio.gather(
            *[t for t in (self._router_task, self._maintenance_task) if t],
            *self._session_tasks,
            return_exceptions=True,
        )

        if self.endpoint:
            self.endpoint.close()
        if self.database:
            await self.database.close()

        logger.info(f"Transfer server stopped. {self.transfers_completed} completed, "
                    f"{self.transfers_failed} failed, {self.bytes_received:,} bytes received")

    async def __aenter__(self) -> 'TransferServer':
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.stop()

    # === Routing ===

    def _on_datagram(self, message: Message, addr: Address):
        self._incoming.put_nowait((message, addr))

    async def _route_loop(self):
        while True:
            message, addr = await self._incoming.get()
            try:
                await self._route(message, addr)
            except TransferError as e:
                logger.warning(f"Could not route {message.TYPE.value} from {addr}: {e}")

    async def _route(self, message: Message, addr: Address):
        transfer_id = message.transfer_id
        session = await self.registry.lookup(transfer_id)

        if isinstance(message, Manifest):
            if session is not None and session.phase in (Phase.FAILED, Phase.CANCELLED):
                # A new attempt for the same file replaces the finished one
                session.end_grace()
                await self.registry.remove(transfer_id, session)
                session = None

            if session is None:
                session = await self._admit(message, addr)
                if session is None:
                    return

        if session is None:
            if not isinstance(message, Cancel):
                self._reply(Cancel(transfer_id=transfer_id, reason="unknown transfer"), addr)
            return

        session.peer = addr
        session.deliver(message)

    async def _admit(self, message: Manifest, addr: Address) -> Optional[TransferSession]:
        if len(self.registry.active()) >= self.config.upload_slots:
            self.rejected_busy += 1
            logger.info(f"Rejecting {message.file_name} from {addr}: server busy")
            self._reply(NegotiationAck(transfer_id=message.transfer_id, accepted=False,
                                       reason="server busy"), addr)
            return None

        session, created = await self.registry.insert_if_absent(
            message.transfer_id, lambda: self._new_session(message, addr)
        )
        if created:
            self.transfers_started += 1
            logger.info(f"New transfer {message.transfer_id[:12]} from {addr}: "
                        f"{message.file_name} ({message.size:,} bytes)")
            task = asyncio.create_task(self._run_session(session))
            self._session_tasks.add(task)
            task.add_done_callback(self._session_tasks.discard)
        return session

    def _new_session(self, message: Manifest, addr: Address) -> ReceiverSession:
        manifest = message.to_manifest()
        session = ReceiverSession(
            manifest,
            self.config.files_dir / manifest.file_name,
            send=lambda m: self._send(m, session.peer),
            config=self.config,
            registry=self.registry,
            progress_callback=self._on_progress,
        )
        session.peer = addr
        return session

    async def _run_session(self, session: ReceiverSession):
        try:
            await session.run()
        except Exception as e:
            logger.exception(f"Session {session.transfer_id[:12]} crashed: {e}")
            session.abort(TransferError(f"internal error: {e}"))
        finally:
            await self.registry.remove(session.transfer_id, session)

    def _on_progress(self, session: TransferSession):
        if not session.is_terminal:
            return

        outcome = session.outcome()
        self.recent_outcomes.append(outcome)
        self.bytes_received += outcome.bytes_transferred

        if session.phase is Phase.COMPLETED:
            self.transfers_completed += 1
        elif session.phase is Phase.FAILED:
            self.transfers_failed += 1
        else:
            self.transfers_cancelled += 1

    def _send(self, message: Message, addr: Address):
        self.endpoint.send(message, addr)

    def _reply(self, message: Message, addr: Address):
        try:
            self._send(message, addr)
        except TransportUnavailable as e:
            logger.debug(f"Could not reply to {addr}: {e}")

    # === Maintenance ===

    async def _maintenance_loop(self):
        while True:
            await asyncio.sleep(MAINTENANCE_INTERVAL)
            await self.run_maintenance()

    async def run_maintenance(self) -> int:
        """Purge expired resume records and stop sessions lingering too long."""
        for session in self.registry.expired(self.config.grace_period * 2):
            if isinstance(session, ReceiverSession):
                session.end_grace()

        purged = await self.registry.purge_retained(self.config.retention_seconds)
        if purged:
            logger.info(f"Purged {purged} expired resume record(s)")
        return purged

    # === Operator API ===

    def cancel(self, transfer_id: str, reason: str = "cancelled by operator") -> bool:
        """
        Cancel a live transfer.

        Returns:
            True if a non-terminal session was found
        """
        session = self.registry.peek(transfer_id) if self.registry else None
        if session is None or session.is_terminal:
            return False
        session.cancel(reason)
        return True

    def get_session(self, transfer_id: str) -> Optional[TransferSession]:
        return self.registry.peek(transfer_id) if self.registry else None

    def snapshot(self) -> List[Dict]:
        """Status of every registered session."""
        if self.registry is None:
            return []
        return [s.to_dict() for s in self.registry.sessions()]

    async def history(self, status: Optional[str] = None) -> List[Dict]:
        """Persisted transfer records, newest first."""
        if self.database is None:
            return []
        return await self.database.list_transfers(status)

    def get_stats(self) -> Dict:
        return {
            'address': list(self.address) if self.address else None,
            'active_transfers': len(self.registry.active()) if self.registry else 0,
            'upload_slots': self.config.upload_slots,
            'transfers_started': self.transfers_started,
            'transfers_completed': self.transfers_completed,
            'transfers_failed': self.transfers_failed,
            'transfers_cancelled': self.transfers_cancelled,
            'rejected_busy': self.rejected_busy,
            'bytes_received': self.bytes_received,
            'datagrams_received': self.endpoint.datagrams_received if self.endpoint else 0,
            'datagrams_rejected': self.endpoint.datagrams_rejected if self.endpoint else 0,
        }
